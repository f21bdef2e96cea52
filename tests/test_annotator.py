"""Tests for the Annotator facade."""

import pytest

from semantic_annotator.annotator import Annotator
from semantic_annotator.config import PipelineConfig
from semantic_annotator.keyness import Significance

from conftest import LEXICON_ENTRIES, FakeChat


@pytest.fixture
def chat():
    return FakeChat(
        domains={"gaúcho": ("SH", 0.9), "cuia": ("OA", 0.95)},
        pos={"gaúcho": ("NOUN", "gaúcho")},
    )


@pytest.fixture
def annotator(chat):
    config = PipelineConfig(retry_backoff=0)
    with Annotator(":memory:", config=config, chat=chat) as ann:
        ann.lexicon.load(LEXICON_ENTRIES)
        yield ann


class TestWiring:
    def test_components_share_connection(self, annotator):
        assert annotator.orchestrator.classifier is annotator.classifier
        assert annotator.worker.orchestrator is annotator.orchestrator
        assert annotator.domain_llm is not None
        assert annotator.pos_llm is not None

    def test_llm_disabled_without_api_key(self, monkeypatch, caplog):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        with Annotator(":memory:") as ann:
            assert ann.domain_llm is None
            assert ann.pos_llm is None
            assert ann.classify_domain("xyzzy").domain_code == "NC"
        assert "LLM layers disabled" in caplog.text


class TestAnnotateText:
    def test_pos_then_domains(self, annotator):
        pairs = annotator.annotate_text("O gaúcho tomava chimarrão na cuia.")
        domains = {token.surface_form: record.domain_code for token, record in pairs}
        assert domains["chimarrão"] == "AL"
        assert domains["gaúcho"] == "SH"
        assert domains["cuia"] == "OA"
        assert "." not in domains

    def test_pos_sources(self, annotator):
        result = annotator.annotate("O gaúcho tomava chimarrão.")
        sources = {t.surface_form: t.pos_source.value for t in result.tokens}
        assert sources["tomava"] == "dictionary"
        assert sources["gaúcho"] == "llm"

    def test_classify_tokens_without_persist(self, annotator):
        tokens = annotator.annotate("chimarrão").tokens
        annotator.classify_tokens(tokens, persist=False)
        assert annotator.classifier.cache.get("chimarrão") is None


class TestKeyness:
    def test_domain_profile_reads_cache_only(self, annotator, chat):
        annotator.annotate_text("O gaúcho tomava chimarrão.")
        calls = len(chat.calls)
        profile = annotator.domain_profile("chimarrão chimarrão gaúcho xyzzy")
        assert profile == {"AL": 2, "SH": 1, "NC": 1}
        assert len(chat.calls) == calls

    def test_domain_profile_stopwords_and_inflections(self, annotator, chat):
        annotator.annotate_text("O gaúcho tomava chimarrão.")
        calls = len(chat.calls)
        profile = annotator.domain_profile("Os gaúchos e os chimarrões de xyzzy")
        assert profile == {"MG": 4, "SH": 1, "AL": 1, "NC": 1}
        assert len(chat.calls) == calls

    def test_keyness_excludes_unclassified(self, annotator):
        annotator.classify_domain("felicidade")
        annotator.classify_domain("chimarrão")
        study = " ".join(["chimarrão"] * 30 + ["felicidade"] * 10 + ["xyzzy"] * 50)
        reference = " ".join(["chimarrão"] * 2 + ["felicidade"] * 38)
        results = annotator.keyness(study, reference)
        assert {r.domain_code for r in results} == {"AL", "AB"}
        assert results[0].domain_code == "AL"
        assert results[0].overused
        assert results[0].significance is Significance.HIGH


class TestHistoryAndValidation:
    def test_get_history(self, annotator):
        annotator.classify_domain("felicidade")
        hist = annotator.get_history(entity_type="semantic_lexicon", entity_id="felicidade")
        assert [h.operation for h in hist] == ["CREATE"]
        assert annotator.get_history(entity_type="lexicon_entry", operation="CREATE")

    def test_validate(self, annotator):
        assert annotator.validate() == []
