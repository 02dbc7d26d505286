from __future__ import annotations

import asyncio
import logging
from typing import Optional

from dictation_service.models import Term, TranscriptionResult
from dictation_service.terms import LexiconMatcher, TermMatcher

logger = logging.getLogger(__name__)


def _join(texts) -> str:
    return " ".join(t.strip() for t in texts if t and t.strip()).strip()


class StreamingTranscriptAssembler:
    """Orders backend results by sequence id into live and final text.

    Results may arrive in any order; only the sequence id decides position.
    """

    def __init__(self, matcher: Optional[TermMatcher] = None):
        self._matcher = matcher or LexiconMatcher()
        self._final: dict[int, TranscriptionResult] = {}
        self._interim: dict[int, TranscriptionResult] = {}
        self._dispatched: set[int] = set()
        self._dropped: dict[int, str] = {}
        self._settled = asyncio.Event()
        self._settled.set()

    # --- bookkeeping ---

    def mark_dispatched(self, sequence_id: int) -> None:
        self._dispatched.add(sequence_id)
        self._update_settled()

    def mark_dropped(self, sequence_id: int, reason: str = "") -> None:
        if sequence_id in self._final:
            return
        self._dropped.setdefault(sequence_id, reason)
        self._interim.pop(sequence_id, None)
        self._update_settled()

    @property
    def unresolved_ids(self) -> list[int]:
        return sorted(self._dispatched - self._final.keys() - self._dropped.keys())

    @property
    def dropped_ids(self) -> list[int]:
        return sorted(self._dropped)

    @property
    def sequence_ids(self) -> list[int]:
        return sorted(self._final)

    def results(self) -> list[TranscriptionResult]:
        return [self._final[k] for k in sorted(self._final)]

    def _update_settled(self) -> None:
        if self.unresolved_ids:
            self._settled.clear()
        else:
            self._settled.set()

    # --- ingestion ---

    def ingest(self, result: TranscriptionResult) -> bool:
        """Store a result. An id that already has a final result is never overwritten."""
        if result.interim:
            return self.ingest_interim(result)
        if result.sequence_id in self._final:
            logger.debug("Ignoring repeated result for chunk %d", result.sequence_id)
            return False
        self._final[result.sequence_id] = result
        self._interim.pop(result.sequence_id, None)
        self._dropped.pop(result.sequence_id, None)
        self._update_settled()
        return True

    def ingest_interim(self, result: TranscriptionResult) -> bool:
        sid = result.sequence_id
        if sid in self._final or sid in self._dropped or sid in self._interim:
            return False
        self._interim[sid] = result
        return True

    # --- output ---

    def live_text(self) -> str:
        merged = {**self._interim, **self._final}
        return _join(merged[k].text for k in sorted(merged))

    async def final_text(self, timeout_ms: int = 15000) -> str:
        """Wait (bounded) for every dispatched chunk, then join what resolved."""
        if self.unresolved_ids:
            try:
                await asyncio.wait_for(self._settled.wait(), timeout_ms / 1000)
            except asyncio.TimeoutError:
                logger.warning(
                    "Final transcript built without %d unresolved chunk(s): %s",
                    len(self.unresolved_ids),
                    self.unresolved_ids,
                )
        return _join(self._final[k].text for k in sorted(self._final))

    def extract_terms(self, text: str) -> list[Term]:
        return self._matcher(text)
