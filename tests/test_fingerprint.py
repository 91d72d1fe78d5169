"""Tests for error fingerprints, job priorities and poll delays."""

from greenlight.core.fingerprint import FINGERPRINT_LENGTH, fingerprint, normalize_error
from greenlight.core.polling import next_delay
from greenlight.core.priority import DEFAULT_PRIORITY, job_priority, rank


class TestFingerprint:
    def test_deterministic(self):
        text = "src/app.ts(12,5): error TS2304: Cannot find name 'foo'."
        assert fingerprint(text) == fingerprint(text)

    def test_length(self):
        assert len(fingerprint("boom")) == FINGERPRINT_LENGTH

    def test_empty_and_none_agree(self):
        assert fingerprint("") == fingerprint(None)

    def test_timestamps_ignored(self):
        a = "2024-01-02T03:04:05.123Z FAIL tests/app.test.ts"
        b = "2025-06-07T08:09:10.456Z FAIL tests/app.test.ts"
        assert fingerprint(a) == fingerprint(b)

    def test_line_and_column_ignored(self):
        assert fingerprint("src/a.py:10:4: E501 line too long") == fingerprint("src/a.py:99:1: E501 line too long")

    def test_commit_sha_ignored(self):
        assert fingerprint("HEAD is now at 1a2b3c4d broken") == fingerprint("HEAD is now at 9f8e7d6c broken")

    def test_absolute_paths_collapse(self):
        assert normalize_error("/home/alice/work/app/main.py failed") == "main.py failed"
        assert fingerprint("/home/alice/app/main.py failed") == fingerprint("/runner/_work/app/main.py failed")

    def test_only_prefix_counts(self):
        head = "x" * 500
        assert fingerprint(head + "tail one") == fingerprint(head + "tail two")

    def test_different_errors_differ(self):
        assert fingerprint("TypeError: a is undefined") != fingerprint("SyntaxError: unexpected token")

    def test_no_collisions_across_1000_samples(self):
        samples = [f"error in module_{i}: unexpected token '{chr(97 + i % 26)}'" for i in range(1000)]
        assert len(set(samples)) == 1000
        assert len({fingerprint(s) for s in samples}) == 1000


class TestPriority:
    def test_documented_order(self):
        assert rank(["lint-job", "build-job", "e2e-job"]) == ["build-job", "lint-job", "e2e-job"]

    def test_table(self):
        assert job_priority("Build") == 100
        assert job_priority("typecheck") == 90
        assert job_priority("ESLint") == 80
        assert job_priority("unit tests") == 70
        assert job_priority("integration-tests") == 60
        assert job_priority("e2e") == 50
        assert job_priority("coverage") == 40
        assert job_priority("report") == 30

    def test_unknown_job_default(self):
        assert job_priority("deploy-preview") == DEFAULT_PRIORITY

    def test_ties_keep_discovery_order(self):
        assert rank(["e2e-a", "deploy", "e2e-b"]) == ["e2e-a", "deploy", "e2e-b"]

    def test_objects_with_name(self):
        class Job:
            def __init__(self, name):
                self.name = name

        jobs = [Job("test"), Job("compile")]
        assert [j.name for j in rank(jobs)] == ["compile", "test"]


class TestPollDelay:
    def test_active_jobs_grow_then_cap(self):
        delays = [next_delay("in_progress", attempt, True) for attempt in range(10)]
        assert delays[0] == 5.0
        assert all(a <= b for a, b in zip(delays, delays[1:]))
        assert max(delays) == 15.0
        assert delays[-1] == delays[-2] == 15.0

    def test_queued(self):
        assert next_delay("queued", 0) == 30.0
        assert next_delay("waiting", 7) == 30.0

    def test_other_status(self):
        assert next_delay("completed", 3) == 10.0
