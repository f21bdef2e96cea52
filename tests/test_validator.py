"""Tests for the validation engine."""

from semantic_annotator.cache import ClassificationCache
from semantic_annotator.models import ClassificationRecord, ClassificationSource, TagsetNode
from semantic_annotator.tagset import SemanticTagset
from semantic_annotator.validator import validate_all, validate_entry, validate_tagset_nodes


def rule_ids(results):
    return sorted(r.rule_id for r in results)


class TestValidateEntry:
    def test_valid(self):
        assert validate_entry({"headword": "mate", "pos_class": "s.m.",
                               "confidence": 0.9, "provenance": "regional"}) == []

    def test_all_problems(self):
        results = validate_entry({"headword": " ", "confidence": "high",
                                  "provenance": "oral"}, index=3)
        assert rule_ids(results) == ["VAL-LEX-001", "VAL-LEX-002", "VAL-LEX-003",
                                     "VAL-LEX-004"]
        assert results[0].entity_id == " "

    def test_boolean_confidence_rejected(self):
        results = validate_entry({"headword": "mate", "pos_class": "s.m.",
                                  "confidence": True, "provenance": "regional"})
        assert rule_ids(results) == ["VAL-LEX-002"]

    def test_missing_headword_uses_index(self):
        results = validate_entry({"provenance": "regional", "pos_class": "s.m."}, index=7)
        assert results[0].entity_id == "#7"


class TestValidateTagsetNodes:
    def test_valid_batch(self):
        nodes = [TagsetNode("NA", None, 1), TagsetNode("NA.FA", "NA", 2)]
        assert validate_tagset_nodes(nodes) == []

    def test_parent_at_wrong_depth(self):
        nodes = [TagsetNode("NA", None, 1), TagsetNode("NA.FA.AV", "NA", 3)]
        assert rule_ids(validate_tagset_nodes(nodes)) == ["VAL-TAX-005"]

    def test_known_codes_satisfy_parents(self):
        results = validate_tagset_nodes([TagsetNode("NA.FL", "NA", 2)], known_codes={"NA"})
        assert results == []

    def test_structural_errors(self):
        nodes = [
            TagsetNode("A.B.C.D.E", "A.B.C.D", 5),
            TagsetNode("XX", "NA", 1),
            TagsetNode("YY.ZZ", None, 2),
            TagsetNode("QQ.RR", "QQ", 2),
        ]
        assert rule_ids(validate_tagset_nodes(nodes)) == [
            "VAL-TAX-001", "VAL-TAX-002", "VAL-TAX-003", "VAL-TAX-004",
        ]


class TestValidateAll:
    def test_clean_database(self, conn):
        assert validate_all(conn) == []

    def test_code_missing_from_tagset_is_warning(self, conn):
        SemanticTagset(conn).load([{"code": "AL"}])
        cache = ClassificationCache(conn)
        with conn:
            cache.put(ClassificationRecord("mate", "AL", 0.9, ClassificationSource.LLM))
            cache.put(ClassificationRecord("pingo", "NA.FA", 0.9, ClassificationSource.LLM))
            cache.put(ClassificationRecord("de", "MG", 1.0, ClassificationSource.STOPWORD))
        results = validate_all(conn)
        assert rule_ids(results) == ["VAL-SEM-001"]
        assert results[0].severity == "WARNING"
        assert results[0].entity_id == "pingo"

    def test_empty_tagset_skips_code_check(self, conn):
        with conn:
            ClassificationCache(conn).put(
                ClassificationRecord("pingo", "NA.FA", 0.9, ClassificationSource.LLM)
            )
        assert validate_all(conn) == []

    def test_stored_nc_is_error(self, conn):
        with conn:
            conn.execute(
                "INSERT INTO semantic_lexicon (word, domain_code, confidence, source) "
                "VALUES ('xyz', 'NC', 0.0, 'llm')"
            )
        results = validate_all(conn)
        assert rule_ids(results) == ["VAL-SEM-002"]
        assert results[0].severity == "ERROR"

    def test_orphan_tagset_node(self, conn):
        conn.execute("PRAGMA foreign_keys = OFF")
        with conn:
            conn.execute(
                "INSERT INTO semantic_tagset (code, parent_code, depth) "
                "VALUES ('NA.FA', 'NA', 2)"
            )
        assert rule_ids(validate_all(conn)) == ["VAL-TAX-006"]
