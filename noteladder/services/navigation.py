from __future__ import annotations
from typing import Iterable, Mapping

from noteladder.models import Note, Decision


class ReviewCursor:
    """
    Position within a review's note list, materialized once when the session is opened.
    Moving around never re-resolves eligibility.
    """

    def __init__(self, notes: Iterable[Note], decisions: Mapping[str, Decision] | None = None):
        self.notes: list[Note] = list(notes)
        self.decisions: dict[str, Decision] = dict(decisions or {})
        self.index = self._start_index()

    def _start_index(self) -> int:
        # First undecided note; all decided -> stay on the last one
        for i, n in enumerate(self.notes):
            if n.id not in self.decisions:
                return i
        return max(0, len(self.notes) - 1)

    @property
    def is_finished(self) -> bool:
        return not self.notes

    @property
    def current(self) -> Note | None:
        if self.is_finished:
            return None
        return self.notes[self.index]

    @property
    def current_decision(self) -> Decision | None:
        note = self.current
        return self.decisions.get(note.id) if note is not None else None

    @property
    def can_go_back(self) -> bool:
        return self.index > 0

    @property
    def can_go_forward(self) -> bool:
        return self.index < len(self.notes) - 1

    @property
    def progress_text(self) -> str:
        if self.is_finished:
            return "0 of 0"
        return f"{self.index + 1} of {len(self.notes)}"

    @property
    def undecided(self) -> int:
        return sum(1 for n in self.notes if n.id not in self.decisions)

    def next(self) -> Note | None:
        if self.can_go_forward:
            self.index += 1
        return self.current

    def previous(self) -> Note | None:
        if self.can_go_back:
            self.index -= 1
        return self.current

    def jump(self, index: int) -> Note | None:
        if not 0 <= index < len(self.notes):
            raise IndexError(f"review position out of range: {index}")
        self.index = index
        return self.current

    def record(self, note_id: str, decision: Decision | str, *, advance: bool = True) -> Note | None:
        """Mirror a submitted decision and move on to the next card."""
        self.decisions[note_id] = Decision(decision)
        if advance and self.current is not None and self.current.id == note_id:
            self.next()
        return self.current
