"""Clinical term extraction from transcript text."""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Sequence

from dictation_service.models import Term


class TermCategory(str, Enum):
    symptom = "symptom"
    diagnosis = "diagnosis"
    medication = "medication"
    procedure = "procedure"


@dataclass(frozen=True)
class LexiconEntry:
    term: str
    synonyms: tuple[str, ...]
    category: TermCategory


DEFAULT_LEXICON: tuple[LexiconEntry, ...] = (
    LexiconEntry("cefalea", ("dolor de cabeza", "jaqueca"), TermCategory.symptom),
    LexiconEntry("pirexia", ("fiebre", "temperatura elevada"), TermCategory.symptom),
    LexiconEntry("disnea", ("dificultad respiratoria", "falta de aire"), TermCategory.symptom),
    LexiconEntry("taquicardia", ("pulso rápido", "latidos acelerados"), TermCategory.symptom),
    LexiconEntry("hipertensión", ("presión alta", "tensión arterial elevada"), TermCategory.diagnosis),
    LexiconEntry("diabetes", ("diabetes mellitus", "azúcar alta"), TermCategory.diagnosis),
    LexiconEntry("anemia", ("hemoglobina baja", "déficit de hierro"), TermCategory.diagnosis),
    LexiconEntry("paracetamol", ("acetaminofén",), TermCategory.medication),
    LexiconEntry("ibuprofeno", ("antiinflamatorio",), TermCategory.medication),
    LexiconEntry("amoxicilina", ("antibiótico",), TermCategory.medication),
    LexiconEntry("omeprazol", ("protector gástrico",), TermCategory.medication),
    LexiconEntry("hemograma", ("análisis de sangre", "conteo sanguíneo"), TermCategory.procedure),
    LexiconEntry("radiografía", ("rayos x", "rx"), TermCategory.procedure),
    LexiconEntry("electrocardiograma", ("ecg", "ekg"), TermCategory.procedure),
    LexiconEntry("ecografía", ("ultrasonido", "eco"), TermCategory.procedure),
)

TermMatcher = Callable[[str], list[Term]]


def _fold(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text.casefold())
    return "".join(c for c in decomposed if not unicodedata.combining(c))


class LexiconMatcher:
    """Matches canonical terms and their synonyms on word boundaries.

    Matching ignores case and accents. Each canonical term is reported once, in
    order of its first appearance in the text.
    """

    def __init__(self, entries: Sequence[LexiconEntry] = DEFAULT_LEXICON):
        self._patterns: list[tuple[re.Pattern, LexiconEntry]] = []
        for entry in entries:
            phrases = sorted({_fold(p) for p in (entry.term, *entry.synonyms)}, key=len, reverse=True)
            alternation = "|".join(r"\s+".join(map(re.escape, p.split())) for p in phrases)
            self._patterns.append((re.compile(rf"\b(?:{alternation})\b"), entry))

    def __call__(self, text: str) -> list[Term]:
        folded = _fold(text or "")
        hits: list[tuple[int, Term]] = []
        for pattern, entry in self._patterns:
            match = pattern.search(folded)
            if match:
                hits.append((match.start(), Term(term=entry.term, category=entry.category.value)))
        hits.sort(key=lambda hit: hit[0])
        return [term for _, term in hits]
