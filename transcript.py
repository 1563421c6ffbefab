"""Live transcript reconciliation for both recognition backends.

The two backends report text differently and are reconciled differently:

* The remote service sends sentence-level results. An interim result is
  the provisional text of the current sentence; a final result closes the
  sentence and is appended verbatim.
* An on-device task reports its whole output since the task began. Its
  text is only appended when the task ends (final result or re-arm), and
  consecutive tasks are joined with a single space.
"""

from __future__ import annotations

from models import RecognitionEvent, RecognitionKind


class TranscriptAggregator:
    """Confirmed text plus a volatile suffix, for sentence-level results."""

    def __init__(self) -> None:
        self._confirmed = ""
        self._volatile = ""

    @property
    def confirmed(self) -> str:
        return self._confirmed

    @property
    def volatile(self) -> str:
        return self._volatile

    @property
    def current(self) -> str:
        return self._confirmed + self._volatile

    def apply(self, event: RecognitionEvent) -> bool:
        """Fold one event in. Returns True when ``current`` may have changed."""
        kind = event.kind
        if kind == RecognitionKind.FINAL.value:
            self._on_final(event.text)
            return True
        if kind == RecognitionKind.PARTIAL.value:
            self._volatile = event.text
            return True
        if kind == RecognitionKind.REARM.value:
            self._on_rearm()
            return True
        return False

    def _on_final(self, text: str) -> None:
        self._confirmed += text
        self._volatile = ""

    def _on_rearm(self) -> None:
        pass


class TaskTranscriptAggregator(TranscriptAggregator):
    """Per-task cumulative results, committed only at task boundaries."""

    @property
    def current(self) -> str:
        return _join(self._confirmed, self._volatile)

    def _on_final(self, text: str) -> None:
        self._commit(text)

    def _on_rearm(self) -> None:
        self._commit(self._volatile)

    def _commit(self, text: str) -> None:
        self._confirmed = _join(self._confirmed, text.strip())
        self._volatile = ""


def _join(head: str, tail: str) -> str:
    if not head:
        return tail
    if not tail:
        return head
    return f"{head} {tail}"
