"""Tests for roster name matching."""

import pytest

from app.services.name_matching import DEFAULT_VARIANTS_PATH, NameMatcher, normalize_name


@pytest.fixture
def matcher():
    return NameMatcher(
        variant_groups=[["soumen", "somen"], ["subham", "shubham", "shubom"]],
        manual_mappings={"Soumen Ghoshal": "Somen  Ghoshal"}
    )


class TestNormalize:
    """Tests for normalize_name."""

    def test_lowercases_and_collapses_whitespace(self):
        assert normalize_name("  Asha   RAO ") == "asha rao"

    def test_empty(self):
        assert normalize_name(None) == ""
        assert normalize_name("   ") == ""


class TestSimilarity:
    """Tests for are_names_similar."""

    def test_exact_after_normalisation(self, matcher):
        assert matcher.are_names_similar("Asha Rao", "asha  rao")

    def test_variant_token_matches(self, matcher):
        assert matcher.are_names_similar("Shubham Pal", "Subham Pal")
        assert matcher.are_names_similar("shubom pal", "SHUBHAM PAL")

    def test_variant_does_not_cross_classes(self, matcher):
        assert not matcher.are_names_similar("Somen Pal", "Subham Pal")

    def test_token_count_must_match(self, matcher):
        assert not matcher.are_names_similar("Subham Kumar Pal", "Shubham Pal")

    def test_different_names(self, matcher):
        assert not matcher.are_names_similar("Asha Rao", "Asha Roy")
        assert not matcher.are_names_similar("", "Asha Rao")


class TestCandidates:
    """Tests for Keka-side name permutations."""

    def test_all_permutations(self, matcher):
        remote = {
            "firstName": "Asha",
            "middleName": "K",
            "lastName": "Rao",
            "displayName": "Asha Rao (Line 3)",
        }
        assert matcher.candidate_names(remote) == [
            "asha rao",
            "asha k rao",
            "asha rao (line 3)",
            "rao asha",
        ]

    def test_last_first_order_matches(self, matcher):
        remote = {"id": "e-1", "firstName": "Rao", "lastName": "Asha"}
        assert matcher.matches("Asha Rao", remote)

    def test_manual_mapping_targets_keka_name(self, matcher):
        """A mapped local name matches the Keka spelling it maps to."""
        remote = {"id": "e-9", "firstName": "Somen", "lastName": "Ghoshal"}
        assert matcher.local_targets("soumen ghoshal") == ["soumen ghoshal", "somen ghoshal"]
        assert matcher.matches("Soumen Ghoshal", remote)


class TestFindMatch:
    """Tests for find_match."""

    def test_first_match_wins(self, matcher):
        remotes = [
            {"id": "e-1", "firstName": "Asha", "lastName": "Rao"},
            {"id": "e-2", "displayName": "Asha Rao"},
        ]
        assert matcher.find_match("Asha Rao", remotes)["id"] == "e-1"

    def test_taken_id_skipped(self, matcher):
        remotes = [
            {"id": "e-1", "firstName": "Asha", "lastName": "Rao"},
            {"id": "e-2", "displayName": "Asha Rao"},
        ]
        match = matcher.find_match("Asha Rao", remotes, is_taken=lambda remote_id: remote_id == "e-1")
        assert match["id"] == "e-2"

    def test_no_match(self, matcher):
        assert matcher.find_match("Nobody", [{"id": "e-1", "firstName": "Asha", "lastName": "Rao"}]) is None


class TestYamlTable:
    """Tests for loading the variant table."""

    def test_bundled_table_loads(self):
        matcher = NameMatcher.from_yaml(DEFAULT_VARIANTS_PATH)
        assert matcher.are_names_similar("Prosenjit Roy", "Prasenjit Roy")
        assert matcher.local_targets("Soumen Ghoshal")[-1] == "somen ghoshal"

    def test_custom_table(self, tmp_path):
        path = tmp_path / "variants.yaml"
        path.write_text("variants:\n  - [mohammad, mohammed, md]\n", encoding="utf-8")

        matcher = NameMatcher.from_yaml(str(path))

        assert matcher.are_names_similar("Md Salim", "Mohammed Salim")
        assert matcher.manual_mappings == {}
