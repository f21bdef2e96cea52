"""Tests for the semantic-annotator command-line interface."""

import sqlite3

import pytest
import yaml

from semantic_annotator.batch.cli import main

from conftest import LEXICON_ENTRIES

TAGSET = {
    "AB": "Abstrato",
    "AC": "Ação",
    "AL": "Alimentação",
    "NA": "Natureza",
    "NA.FA": "Fauna",
    "OA": "Objetos e artefatos",
}


@pytest.fixture(autouse=True)
def no_api_key(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)


@pytest.fixture
def db(tmp_path):
    return str(tmp_path / "annotations.db")


@pytest.fixture
def loaded_db(db, tmp_path):
    lexicon = tmp_path / "lexicon.yaml"
    lexicon.write_text(yaml.safe_dump(LEXICON_ENTRIES, allow_unicode=True), encoding="utf-8")
    tagset = tmp_path / "tagset.yaml"
    tagset.write_text(yaml.safe_dump(TAGSET, allow_unicode=True), encoding="utf-8")
    assert main(["--db", db, "load-lexicon", str(lexicon)]) == 0
    assert main(["--db", db, "load-tagset", str(tagset)]) == 0
    return db


class TestSetup:
    def test_no_command_prints_help(self, capsys):
        assert main([]) == 1
        assert "usage" in capsys.readouterr().out

    def test_init(self, db, capsys):
        assert main(["--db", db, "init"]) == 0
        assert "Database ready." in capsys.readouterr().out

    def test_load_lexicon_and_tagset(self, capsys, loaded_db):
        out = capsys.readouterr().out
        assert "Accepted: 5" in out
        assert "Accepted: 6" in out

    def test_missing_file(self, db, tmp_path, capsys):
        assert main(["--db", db, "load-lexicon", str(tmp_path / "nope.yaml")]) == 1
        assert "[PARSE ERROR]" in capsys.readouterr().out

    def test_bad_config(self, db, tmp_path, capsys):
        config = tmp_path / "config.yaml"
        config.write_text("chunk: 3\n", encoding="utf-8")
        assert main(["--db", db, "--config", str(config), "init"]) == 1
        assert "Unknown config keys" in capsys.readouterr().out


class TestSeeding:
    def test_add_candidates_then_start(self, loaded_db, tmp_path, capsys):
        request = tmp_path / "job.yaml"
        request.write_text(
            "candidates:\n  - felicidade\n  - plantação\n", encoding="utf-8"
        )
        assert main(["--db", loaded_db, "add-candidates", str(request),
                     "--from-lexicon"]) == 0
        assert "Queued 5 new candidate(s)" in capsys.readouterr().out

        assert main(["--db", loaded_db, "start", "--chunk-size", "2"]) == 0
        out = capsys.readouterr().out
        assert "Status:     completed" in out
        assert "Chunks:     3/3 (size 2)" in out
        assert "Processed:  5" in out
        assert "Classified: 5" in out

        assert main(["--db", loaded_db, "status"]) == 0
        assert "completed" in capsys.readouterr().out

    def test_unclassified_words_reported(self, loaded_db, tmp_path, capsys):
        request = tmp_path / "job.yaml"
        request.write_text("candidates: [xyzzy, felicidade]\n", encoding="utf-8")
        assert main(["--db", loaded_db, "start", "--request", str(request)]) == 0
        job_line = next(line for line in capsys.readouterr().out.splitlines()
                        if line.startswith("Job "))
        job_id = job_line.split()[1]

        assert main(["--db", loaded_db, "status", job_id, "--failures"]) == 0
        out = capsys.readouterr().out
        assert "Unclassified: 1 (llm_empty: 1)" in out
        assert "xyzzy" in out

    def test_invalid_request(self, db, tmp_path, capsys):
        request = tmp_path / "job.yaml"
        request.write_text("priority: [folk]\n", encoding="utf-8")
        assert main(["--db", db, "add-candidates", str(request)]) == 1
        assert "[PARSE ERROR]" in capsys.readouterr().out

    def test_cancel_unknown_job(self, db, capsys):
        assert main(["--db", db, "cancel", "job-missing"]) == 1
        assert "[ERROR] Job not found" in capsys.readouterr().out

    def test_worker_with_empty_queue(self, db, capsys):
        assert main(["--db", db, "worker"]) == 0
        assert "No queued continuations." in capsys.readouterr().out

    def test_no_stalled_jobs(self, db, capsys):
        assert main(["--db", db, "recover"]) == 0
        assert "No stalled jobs." in capsys.readouterr().out


class TestStalledJobs:
    """Jobs left processing by an invocation that died."""

    @pytest.fixture
    def stalled_job(self, loaded_db, tmp_path, capsys):
        request = tmp_path / "job.yaml"
        request.write_text("candidates: [felicidade, plantação]\n", encoding="utf-8")
        assert main(["--db", loaded_db, "start", "--request", str(request), "--no-run"]) == 0
        job_line = next(line for line in capsys.readouterr().out.splitlines()
                        if line.startswith("Job "))
        job_id = job_line.split()[1]
        conn = sqlite3.connect(loaded_db)
        with conn:
            conn.execute(
                "UPDATE batch_jobs SET status = 'processing', "
                "updated_at = '2020-01-01T00:00:00.000' WHERE id = ?",
                (job_id,),
            )
        conn.close()
        return job_id

    def test_recover_then_worker(self, loaded_db, stalled_job, capsys):
        assert main(["--db", loaded_db, "recover"]) == 0
        out = capsys.readouterr().out
        assert f"Job {stalled_job}: queued for chunk 0 (recovery 1 of 3)" in out

        assert main(["--db", loaded_db, "worker"]) == 0
        out = capsys.readouterr().out
        assert "Status:     completed" in out
        assert "Classified: 2" in out

    def test_recent_job_is_not_stalled(self, loaded_db, stalled_job, capsys):
        assert main(["--db", loaded_db, "recover", "--older-than", "1e10"]) == 0
        assert "No stalled jobs." in capsys.readouterr().out

    def test_recover_fails_after_max_attempts(self, loaded_db, stalled_job, capsys):
        assert main(["--db", loaded_db, "recover", "--max-attempts", "0"]) == 1
        assert f"Job {stalled_job}: failed" in capsys.readouterr().out

    def test_resume(self, loaded_db, stalled_job, capsys):
        assert main(["--db", loaded_db, "resume", stalled_job]) == 0
        assert "Status:     completed" in capsys.readouterr().out

    def test_force_cancel(self, loaded_db, stalled_job, capsys):
        assert main(["--db", loaded_db, "cancel", stalled_job, "--force"]) == 0
        assert f"Job {stalled_job} cancelled." in capsys.readouterr().out
        assert main(["--db", loaded_db, "status", stalled_job]) == 0
        assert "Status:     cancelled" in capsys.readouterr().out


class TestClassification:
    def test_classify_by_rule(self, db, capsys):
        assert main(["--db", db, "classify", "felicidade"]) == 0
        out = capsys.readouterr().out
        assert "felicidade\tAB\t0.92\tmorphological_rule" in out

    def test_classify_unknown_word(self, db, capsys):
        assert main(["--db", db, "classify", "xyzzy"]) == 1
        assert "NC" in capsys.readouterr().out

    def test_annotate(self, loaded_db, capsys):
        assert main(["--db", loaded_db, "annotate", "Ele tomava chimarrão.",
                     "--domains"]) == 0
        out = capsys.readouterr().out
        assert "tomava\tVERB\ttomar" in out
        assert "chimarrão\tNOUN\tchimarrão" in out
        assert "\tAL\t1.00" in out

    def test_validate(self, loaded_db, capsys):
        assert main(["--db", loaded_db, "classify", "felicidade"]) == 0
        assert main(["--db", loaded_db, "validate"]) == 0
        assert "Validation passed!" in capsys.readouterr().out
