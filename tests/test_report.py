"""
Tests for the build report.
"""

import json

import yaml

from ailinux_builder.report import build_report, render_text, write_report
from ailinux_builder.sequencer import Phase, PhaseSequencer


def _failed_run(make_ctx, system):
    system.on(["debootstrap"], (1, "No space left on device"))
    ctx = make_ctx()

    def bootstrap(c):
        c.tracker.record("workdir", lambda: None, description="create chroot")
        c.execute("debootstrap", ["debootstrap", "noble", "/w/chroot"])

    seq = PhaseSequencer(ctx)
    outcome = seq.run([Phase(name="bootstrap", executor=bootstrap), Phase(name="build_iso", executor=lambda c: None)])
    return ctx, seq, outcome


class TestBuildReport:
    def test_failed_run_contents(self, make_ctx, system, session):
        ctx, seq, outcome = _failed_run(make_ctx, system)
        report = build_report(
            cfg=ctx.cfg,
            outcome=outcome,
            sequencer=seq,
            error_log=ctx.error_log,
            recoveries=ctx.ops.recovery.history,
            session=session,
            session_type="ssh",
        )

        assert report["outcome"] == "Failed(bootstrap)"
        assert report["exit_code"] == 1
        assert [p["status"] for p in report["phases"]] == ["failed", "skipped"]
        assert report["rolled_back"][0]["description"] == "create chroot"
        assert report["recovery"][0]["outcome"] == "exhausted_retries"
        assert len(report["recovery"][0]["attempts"]) == 3
        assert len(report["errors"]) == 4
        assert report["error_chain"][0]["kind"] == "disk_space"
        assert report["session"]["verdict"] == "alive"
        assert report["session"]["type"] == "ssh"

    def test_report_without_outcome(self, make_ctx):
        ctx = make_ctx()
        report = build_report(
            cfg=ctx.cfg,
            outcome=None,
            sequencer=None,
            error_log=ctx.error_log,
            fatal_error="another build holds the lock",
        )
        assert report["exit_code"] == 2
        assert report["phases"] == []
        assert report["fatal_error"] == "another build holds the lock"

    def test_render_text(self, make_ctx, system):
        ctx, seq, outcome = _failed_run(make_ctx, system)
        report = build_report(
            cfg=ctx.cfg,
            outcome=outcome,
            sequencer=seq,
            error_log=ctx.error_log,
            recoveries=ctx.ops.recovery.history,
        )
        text = render_text(report)
        assert "Outcome: Failed(bootstrap) (exit code 1)" in text
        assert "Operations rolled back: 1" in text
        assert "[disk_space]" in text


class TestWriteReport:
    def test_json(self, tmp_path):
        path = write_report(str(tmp_path / "r" / "report.json"), {"outcome": "Succeeded", "exit_code": 0})
        assert json.loads(open(path, encoding="utf-8").read())["exit_code"] == 0

    def test_yaml(self, tmp_path):
        path = write_report(str(tmp_path / "report.yaml"), {"outcome": "Interrupted", "exit_code": 130})
        assert yaml.safe_load(open(path, encoding="utf-8").read())["outcome"] == "Interrupted"

    def test_unknown_suffix_is_json(self, tmp_path):
        path = write_report(str(tmp_path / "report.out"), {"exit_code": 1})
        assert json.loads(open(path, encoding="utf-8").read()) == {"exit_code": 1}
