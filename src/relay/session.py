"""Relay Session Orchestration.

One RelaySessionHandler per ConversationRelay WebSocket:

setup (callSid) -> transcript seeded with system prompt
prompt (voicePrompt) -> queued turn -> LLM stream -> sentence units -> text messages
interrupt -> log, or cancel the in-flight turn (INTERRUPT_POLICY=cancel)
close -> cancel outstanding work, drop transcript

Features:
- Turns run one at a time per call, in arrival order, on a background worker
  so the receive loop keeps reading interrupts while a reply streams
- Each sentence is sent as soon as the segmenter completes it
- The assistant turn is committed only after every sentence was sent
- Malformed/unknown messages are logged and dropped
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, Iterable, Optional, Protocol

import structlog

from src.relay.config import Config, get_config
from src.relay.conversation import ConversationStore, Role, Turn
from src.relay.exceptions import (
    DuplicateSetup,
    MalformedEvent,
    UnknownSession,
    UnsupportedEvent,
    UpstreamStreamError,
)
from src.relay.prompts import get_system_prompt
from src.relay.protocol import (
    InterruptEvent,
    RelayEventType,
    create_text_message,
    parse_relay_message,
)
from src.relay.segmenter import SentenceUnit, segment_stream

logger = structlog.get_logger(__name__)


class CompletionSource(Protocol):
    """Anything that can stream a reply for a transcript."""

    def stream(self, transcript: Iterable[Any]) -> AsyncGenerator[str, None]:
        ...


class SessionState(str, Enum):
    """Lifecycle of a relay connection."""
    UNBOUND = "unbound"
    BOUND = "bound"
    CLOSED = "closed"


class TurnOutcome(str, Enum):
    """How a prompt's reply ended."""
    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"
    ABANDONED = "abandoned"


@dataclass
class TurnMetrics:
    """Metrics for a single prompt/reply turn."""
    turn_number: int
    start_time: float = field(default_factory=time.time)
    first_sentence_ms: float = 0.0
    total_ms: float = 0.0
    sentences: int = 0
    reply_chars: int = 0
    outcome: Optional[TurnOutcome] = None

    def finalize(self, outcome: TurnOutcome) -> None:
        self.outcome = outcome
        self.total_ms = (time.time() - self.start_time) * 1000


@dataclass
class SessionMetrics:
    """Metrics for an entire call."""
    call_sid: str = ""
    start_time: float = field(default_factory=time.time)
    end_time: float = 0.0
    turns_completed: int = 0
    turns_failed: int = 0
    turns_interrupted: int = 0
    sentences_sent: int = 0
    interrupts: int = 0
    ignored_messages: int = 0

    @property
    def duration_seconds(self) -> float:
        end = self.end_time or time.time()
        return end - self.start_time

    def record(self, turn: TurnMetrics) -> None:
        if turn.outcome == TurnOutcome.COMPLETED:
            self.turns_completed += 1
        elif turn.outcome == TurnOutcome.FAILED:
            self.turns_failed += 1
        elif turn.outcome == TurnOutcome.INTERRUPTED:
            self.turns_interrupted += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "call_sid": self.call_sid,
            "duration_seconds": round(self.duration_seconds, 2),
            "turns_completed": self.turns_completed,
            "turns_failed": self.turns_failed,
            "turns_interrupted": self.turns_interrupted,
            "sentences_sent": self.sentences_sent,
            "interrupts": self.interrupts,
            "ignored_messages": self.ignored_messages,
        }


class RelaySessionHandler:
    """
    Per-connection state machine for ConversationRelay.

    Drives the conversation store, the completion stream and the sentence
    segmenter, and sends text messages back over the WebSocket.
    """

    def __init__(
        self,
        send_message: Callable[[str], Awaitable[None]],
        store: ConversationStore,
        completion: CompletionSource,
        config: Optional[Config] = None,
    ):
        """
        Initialize the session.

        Args:
            send_message: Async function to send WebSocket messages to Twilio
            store: Process-wide transcript store
            completion: Streaming completion source
            config: Optional configuration (uses default if not provided)
        """
        if config is None:
            config = get_config()

        self.config = config
        self._send_message = send_message
        self._store = store
        self._completion = completion
        self._system_prompt = get_system_prompt(config)

        # State
        self._state = SessionState.UNBOUND
        self._call_sid: Optional[str] = None
        self._current_turn = 0
        self._metrics = SessionMetrics()

        # Turn processing (keep the receive loop non-blocking)
        self._turn_queue: asyncio.Queue[str] = asyncio.Queue()
        self._turn_worker_task: Optional[asyncio.Task] = None
        self._turn_task: Optional[asyncio.Task] = None
        self._abandoning = False

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def call_sid(self) -> Optional[str]:
        return self._call_sid

    @property
    def metrics(self) -> SessionMetrics:
        return self._metrics

    @property
    def is_responding(self) -> bool:
        """True while a reply is streaming."""
        return self._turn_task is not None and not self._turn_task.done()

    async def handle_message(self, raw_message: str) -> None:
        """
        Handle an incoming WebSocket message from Twilio.

        Never raises for bad input: malformed payloads, unknown types and
        events for an unknown session are logged and dropped.

        Args:
            raw_message: Raw JSON message string
        """
        if self._state == SessionState.CLOSED:
            logger.debug("Ignoring message on closed session", call_sid=self._call_sid)
            return

        try:
            event_type, event = parse_relay_message(raw_message)
        except UnsupportedEvent as e:
            self._metrics.ignored_messages += 1
            logger.warning("Unknown relay message type", event_type=e.event_type, call_sid=self._call_sid)
            return
        except MalformedEvent as e:
            self._metrics.ignored_messages += 1
            logger.warning("Failed to parse relay message", error=str(e), call_sid=self._call_sid)
            return

        try:
            if event_type == RelayEventType.SETUP:
                await self.setup(event.call_sid)

            elif event_type == RelayEventType.PROMPT:
                await self.prompt(event.voice_prompt)

            elif event_type == RelayEventType.INTERRUPT:
                await self.interrupt(event)

            elif event_type == RelayEventType.DTMF:
                logger.info("DTMF received", digit=event.digit, call_sid=self._call_sid)

            elif event_type == RelayEventType.ERROR:
                logger.warning("Relay reported error", description=event.description, call_sid=self._call_sid)

        except UnknownSession as e:
            self._metrics.ignored_messages += 1
            logger.warning("Event for unknown session", event_type=event_type.value, call_sid=e.call_sid)
        except DuplicateSetup as e:
            self._metrics.ignored_messages += 1
            logger.warning("Duplicate setup rejected", call_sid=e.call_sid)
        except MalformedEvent as e:
            self._metrics.ignored_messages += 1
            logger.warning("Invalid relay event", event_type=event_type.value, error=str(e))

    async def setup(self, call_sid: str) -> None:
        """
        Bind this connection to a call and create its transcript.

        A repeated setup under the "overwrite" policy abandons the reply in
        flight and any queued prompts before the transcript is replaced.

        Raises:
            MalformedEvent: If call_sid is empty
            DuplicateSetup: If the call is already set up and the policy is "reject"
        """
        if self._state == SessionState.CLOSED:
            logger.debug("Ignoring setup on closed session", call_sid=call_sid)
            return
        if not call_sid:
            raise MalformedEvent("setup without callSid")

        reject = self.config.duplicate_setup_policy == "reject"
        if self._state == SessionState.BOUND:
            if reject:
                raise DuplicateSetup(self._call_sid or call_sid)
            await self._abandon_turns()
            if self._call_sid != call_sid:
                self._store.destroy(self._call_sid)

        self._store.create(call_sid, self._system_prompt, overwrite=not reject)
        self._call_sid = call_sid
        self._metrics.call_sid = call_sid
        self._state = SessionState.BOUND

        if self._turn_worker_task is None or self._turn_worker_task.done():
            self._turn_worker_task = asyncio.create_task(self._turn_worker())

        logger.info("Call set up", call_sid=call_sid)

    async def prompt(self, text: str) -> None:
        """
        Queue a caller utterance for a reply.

        Raises:
            UnknownSession: If setup has not happened on this connection
        """
        if self._state != SessionState.BOUND or self._call_sid not in self._store:
            raise UnknownSession(self._call_sid)

        if not text or not text.strip():
            logger.debug("Ignoring empty prompt", call_sid=self._call_sid)
            return

        logger.info(
            "Prompt received",
            call_sid=self._call_sid,
            prompt=text,
            queued_behind=self._turn_queue.qsize() + (1 if self.is_responding else 0),
        )
        await self._turn_queue.put(text)

    async def interrupt(self, event: Optional[InterruptEvent] = None) -> None:
        """Handle a caller barge-in."""
        self._metrics.interrupts += 1
        responding = self.is_responding

        logger.info(
            "Handling interruption",
            call_sid=self._call_sid,
            responding=responding,
            policy=self.config.interrupt_policy,
            utterance_until_interrupt=event.utterance_until_interrupt if event else "",
        )

        if self.config.interrupt_policy == "cancel" and responding:
            self._turn_task.cancel()

    async def close(self) -> None:
        """Close the session, abandoning in-flight work and dropping the transcript."""
        if self._state == SessionState.CLOSED:
            return

        self._state = SessionState.CLOSED

        tasks_to_cancel = []
        for task in (self._turn_task, self._turn_worker_task):
            if task and not task.done():
                task.cancel()
                tasks_to_cancel.append(task)

        if tasks_to_cancel:
            await asyncio.gather(*tasks_to_cancel, return_exceptions=True)

        if self._call_sid is not None:
            self._store.destroy(self._call_sid)

        self._metrics.end_time = time.time()
        logger.info("Relay session closed", metrics=self._metrics.to_dict())

    async def wait_idle(self) -> None:
        """Wait until every queued prompt has been answered."""
        await self._turn_queue.join()

    async def _abandon_turns(self) -> None:
        """Drop queued prompts and cancel the reply in flight without committing it."""
        dropped = 0
        while not self._turn_queue.empty():
            self._turn_queue.get_nowait()
            self._turn_queue.task_done()
            dropped += 1

        task = self._turn_task
        cancelled = task is not None and not task.done()
        if cancelled:
            self._abandoning = True
            task.cancel()
            try:
                await asyncio.gather(task, return_exceptions=True)
            finally:
                self._abandoning = False

        if dropped or cancelled:
            logger.info("Abandoned turns on re-setup", call_sid=self._call_sid, queued_dropped=dropped)

    async def _turn_worker(self) -> None:
        """Background worker that answers queued prompts sequentially."""
        while self._state == SessionState.BOUND:
            text = await self._turn_queue.get()
            try:
                self._turn_task = asyncio.create_task(self._run_turn(text))
                try:
                    await self._turn_task
                except asyncio.CancelledError:
                    if self._state == SessionState.CLOSED:
                        raise
                    # Turn cancellation is expected on interrupt.
                except UnknownSession as e:
                    logger.warning("Turn dropped, session gone", call_sid=e.call_sid)
                except Exception as e:
                    logger.error("Turn failed", call_sid=self._call_sid, error=str(e))
            finally:
                self._turn_task = None
                self._turn_queue.task_done()

    async def _run_turn(self, text: str) -> TurnOutcome:
        """Answer one prompt: stream, segment, send, then commit the reply."""
        call_sid = self._call_sid
        self._current_turn += 1
        turn = TurnMetrics(turn_number=self._current_turn)

        self._store.append(call_sid, Turn(role=Role.USER, content=text))
        context = self._store.messages(call_sid)

        reply_parts = []
        fragments = self._completion.stream(context)
        try:
            async for unit in segment_stream(fragments):
                await self._send_unit(unit, turn)
                reply_parts.append(unit.text)

        except UpstreamStreamError as e:
            reply = "".join(reply_parts)
            turn.finalize(TurnOutcome.FAILED)
            self._metrics.record(turn)
            logger.warning(
                "Response terminated",
                call_sid=call_sid,
                turn=turn.turn_number,
                sentences_sent=turn.sentences,
                error=str(e),
            )
            self._commit_partial(call_sid, reply, reason="upstream_error")
            return TurnOutcome.FAILED

        except asyncio.CancelledError:
            reply = "".join(reply_parts)
            if self._state == SessionState.CLOSED or self._abandoning:
                turn.finalize(TurnOutcome.ABANDONED)
                logger.debug("Turn abandoned", call_sid=call_sid, turn=turn.turn_number)
            else:
                turn.finalize(TurnOutcome.INTERRUPTED)
                self._metrics.record(turn)
                logger.info(
                    "Turn interrupted",
                    call_sid=call_sid,
                    turn=turn.turn_number,
                    sentences_sent=turn.sentences,
                )
                self._commit_partial(call_sid, reply, reason="interrupted")
            raise

        finally:
            await fragments.aclose()

        reply = "".join(reply_parts)
        self._commit(call_sid, Turn(role=Role.ASSISTANT, content=reply))
        turn.reply_chars = len(reply)
        turn.finalize(TurnOutcome.COMPLETED)
        self._metrics.record(turn)

        logger.info(
            "Sent response",
            call_sid=call_sid,
            turn=turn.turn_number,
            response=reply,
            sentences=turn.sentences,
            first_sentence_ms=round(turn.first_sentence_ms, 1),
            total_ms=round(turn.total_ms, 1),
        )
        return TurnOutcome.COMPLETED

    async def _send_unit(self, unit: SentenceUnit, turn: TurnMetrics) -> None:
        if turn.sentences == 0:
            turn.first_sentence_ms = (time.time() - turn.start_time) * 1000
        await self._send_message(create_text_message(unit.text, last=unit.last))
        turn.sentences += 1
        self._metrics.sentences_sent += 1

    def _commit_partial(self, call_sid: str, reply: str, *, reason: str) -> None:
        if self.config.partial_reply_policy != "commit" or not reply:
            logger.debug("Partial reply discarded", call_sid=call_sid, reason=reason, chars=len(reply))
            return
        self._commit(call_sid, Turn(role=Role.ASSISTANT, content=reply))
        logger.debug("Partial reply committed", call_sid=call_sid, reason=reason, chars=len(reply))

    def _commit(self, call_sid: str, turn: Turn) -> None:
        try:
            self._store.append(call_sid, turn)
        except UnknownSession:
            # Call ended while the reply was streaming.
            logger.debug("Transcript gone before commit", call_sid=call_sid)
