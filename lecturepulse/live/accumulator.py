from lecturepulse.models import TranscriptEvent


class TranscriptAccumulator:
    """Append-only transcript for one recording session.

    The accumulator is the only writer; detectors and the scheduler read by
    offset so they never need a copy of text they have already seen.
    """

    def __init__(self) -> None:
        self._text = ""
        self.final_events = 0

    def add(self, event: TranscriptEvent) -> bool:
        """Append a finalized event. Interim events are ignored; returns True if appended."""
        if not event.is_final:
            return False
        text = event.text.strip()
        if not text:
            return False
        self._text = f"{self._text} {text}" if self._text else text
        self.final_events += 1
        return True

    @property
    def text(self) -> str:
        return self._text

    def __len__(self) -> int:
        return len(self._text)

    def tail(self, n: int) -> str:
        """Last *n* characters."""
        return self._text[-n:] if n > 0 else ""

    def since(self, offset: int) -> str:
        return self._text[offset:]

    def reset(self) -> None:
        self._text = ""
        self.final_events = 0
