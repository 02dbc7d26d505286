from dictation_service.terms import LexiconEntry, LexiconMatcher, TermCategory


class TestLexiconMatcher:
    def test_canonical_and_synonym(self):
        matcher = LexiconMatcher()
        terms = matcher("Refiere jaqueca y se indica paracetamol")
        assert [(t.term, t.category) for t in terms] == [
            ("cefalea", "symptom"),
            ("paracetamol", "medication"),
        ]

    def test_case_and_accent_insensitive(self):
        matcher = LexiconMatcher()
        terms = matcher("Antecedente de HIPERTENSION, solicitar Radiografia")
        assert [t.term for t in terms] == ["hipertensión", "radiografía"]

    def test_each_term_reported_once(self):
        matcher = LexiconMatcher()
        terms = matcher("fiebre alta, persiste la fiebre, pirexia nocturna")
        assert [t.term for t in terms] == ["pirexia"]

    def test_multi_word_synonym(self):
        matcher = LexiconMatcher()
        terms = matcher("presenta  falta de aire al caminar")
        assert [t.term for t in terms] == ["disnea"]

    def test_word_boundaries(self):
        matcher = LexiconMatcher()
        assert matcher("situación económica estable") == []
        assert [t.term for t in matcher("pedir eco abdominal")] == ["ecografía"]

    def test_empty_text(self):
        assert LexiconMatcher()("") == []

    def test_custom_lexicon(self):
        entries = [LexiconEntry("metformina", ("glucophage",), TermCategory.medication)]
        matcher = LexiconMatcher(entries)
        assert [t.term for t in matcher("toma Glucophage")] == ["metformina"]
        assert matcher("paracetamol") == []
