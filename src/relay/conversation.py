"""
Per-call conversation transcripts.

The store maps a call SID to the ordered turns of that call. It is created
once per process (see `server/app.py`) and handed to every relay session, so
there is no module-level session map.

Every transcript starts with exactly one system turn, written by `create`.
Turns are only ever appended after that; the store does not enforce
user/assistant alternation.
"""

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Tuple

import structlog

from src.relay.exceptions import DuplicateSetup, UnknownSession

logger = structlog.get_logger(__name__)


class Role(str, Enum):
    """Chat roles understood by the completion API."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Turn:
    """A single turn in the conversation."""
    role: Role
    content: str
    timestamp: float = field(default_factory=time.time, compare=False)

    def to_message(self) -> Dict[str, str]:
        """Turn in OpenAI chat format."""
        return {"role": self.role.value, "content": self.content}


Transcript = Tuple[Turn, ...]


class _Entry:
    """Transcript for one call plus the lock guarding it."""

    __slots__ = ("lock", "turns")

    def __init__(self, system_prompt: str):
        self.lock = threading.Lock()
        self.turns: List[Turn] = [Turn(role=Role.SYSTEM, content=system_prompt)]


class ConversationStore:
    """
    Concurrency-safe registry of call transcripts.

    The registry lock is only held while the dictionary itself changes or is
    read; appends and snapshots take the per-call lock, so calls never wait on
    each other's turns.
    """

    def __init__(self, max_history_turns: int = 0):
        self.max_history_turns = max_history_turns
        self._lock = threading.Lock()
        self._entries: Dict[str, _Entry] = {}

    def create(self, call_sid: str, system_prompt: str, *, overwrite: bool = True) -> None:
        """
        Register a transcript for `call_sid` seeded with the system prompt.

        Args:
            call_sid: Call key from the relay setup event
            system_prompt: Instruction for the first (system) turn
            overwrite: Replace an existing transcript instead of raising

        Raises:
            DuplicateSetup: If the key exists and overwrite is False
        """
        entry = _Entry(system_prompt)
        with self._lock:
            existed = call_sid in self._entries
            if existed and not overwrite:
                raise DuplicateSetup(call_sid)
            self._entries[call_sid] = entry

        if existed:
            logger.warning("Transcript overwritten", call_sid=call_sid)
        else:
            logger.debug("Transcript created", call_sid=call_sid)

    def append(self, call_sid: str, turn: Turn) -> None:
        """Append a turn to the call's transcript."""
        entry = self._entry(call_sid)
        with entry.lock:
            entry.turns.append(turn)

    def get(self, call_sid: str) -> Transcript:
        """Snapshot of the call's turns in insertion order."""
        entry = self._entry(call_sid)
        with entry.lock:
            return tuple(entry.turns)

    def messages(self, call_sid: str) -> List[Dict[str, str]]:
        """
        Get the transcript in OpenAI chat format.

        With `max_history_turns` set, only the system turn and the most recent
        user/assistant pairs are returned; the stored transcript is untouched.
        The window always opens on a user turn.
        """
        turns = self.get(call_sid)
        system, rest = turns[:1], turns[1:]
        if self.max_history_turns > 0:
            rest = rest[-self.max_history_turns * 2:]
            for index, turn in enumerate(rest):
                if turn.role == Role.USER:
                    rest = rest[index:]
                    break
        return [turn.to_message() for turn in system + rest]

    def destroy(self, call_sid: str) -> None:
        """Drop the call's transcript. No-op if it is already gone."""
        with self._lock:
            entry = self._entries.pop(call_sid, None)
        if entry is not None:
            logger.debug("Transcript destroyed", call_sid=call_sid, turns=len(entry.turns))

    def _entry(self, call_sid: str) -> _Entry:
        with self._lock:
            entry = self._entries.get(call_sid)
        if entry is None:
            raise UnknownSession(call_sid)
        return entry

    def __contains__(self, call_sid: object) -> bool:
        with self._lock:
            return call_sid in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
