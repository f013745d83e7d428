"""
Tests for the utterance completeness heuristic.
"""

import pytest

from src.callsim.utterance import (
    ends_with_terminal_punctuation,
    exceeds_length,
    has_context_keyword,
    is_bare_acknowledgement,
    is_complete_utterance,
    matches_turn_shape,
)


class TestAcknowledgements:
    @pytest.mark.parametrize(
        "text",
        ["oui", "Oui.", "allô", "Allô ?", "ALLO !", "non", "Non, non.", "Oui, bonjour !", "d'accord", "Ouais ouais"],
    )
    def test_bare_acknowledgements_never_complete(self, text):
        assert is_bare_acknowledgement(text) is True
        assert is_complete_utterance(text) is False

    def test_acknowledgement_with_context_is_not_bare(self):
        assert is_bare_acknowledgement("Oui, je vous appelle pour un rendez-vous") is False

    def test_empty_is_not_bare(self):
        assert is_bare_acknowledgement("") is False
        assert is_bare_acknowledgement("  ?! ") is False


class TestPredicates:
    def test_terminal_punctuation(self):
        assert ends_with_terminal_punctuation("Je comprends.")
        assert ends_with_terminal_punctuation("Vraiment ?")
        assert ends_with_terminal_punctuation("Attendez…")
        assert not ends_with_terminal_punctuation("je vous appelle")

    def test_turn_shape_requires_context_length(self):
        assert not matches_turn_shape("je suis Marc", min_length=12)
        assert matches_turn_shape("je suis Marc de Acme", min_length=12)

    @pytest.mark.parametrize(
        "text",
        [
            "Bonjour madame Dubois",
            "je m'appelle Julie Martin",
            "j'ai eu votre numéro par un collègue",
            "est-ce que vous avez deux minutes",
            "j'aimerais organiser un échange",
            "on travaille avec des PME",
        ],
    )
    def test_turn_shapes(self, text):
        assert matches_turn_shape(text) is True

    def test_context_keyword(self):
        assert has_context_keyword("sur LinkedIn") is True
        assert has_context_keyword("gratuit") is False  # too short
        assert has_context_keyword("c'est gratuit") is True

    def test_length_threshold(self):
        assert exceeds_length("a" * 41) is True
        assert exceeds_length("a" * 40) is False
        assert exceeds_length("a" * 21, threshold=20) is True


class TestIsCompleteUtterance:
    def test_too_short(self):
        assert is_complete_utterance("") is False
        assert is_complete_utterance("Ok.") is False

    def test_full_introduction(self):
        text = "Bonjour, je suis Marc de la société X, j'aimerais vous proposer un rendez-vous."
        assert is_complete_utterance(text) is True

    def test_unfinished_fragment_waits(self):
        assert is_complete_utterance("je vous") is False
        assert is_complete_utterance("alors euh") is False

    def test_long_text_without_shape(self):
        text = "alors voilà euh en fait nous faisons des logiciels RH"
        assert len(text) > 40
        assert is_complete_utterance(text) is True

    def test_thresholds_are_tunable(self):
        text = "alors voilà nous faisons"
        assert is_complete_utterance(text) is False
        assert is_complete_utterance(text, length_threshold=10) is True
