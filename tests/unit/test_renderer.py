"""Tests for the Rich build renderer."""

from __future__ import annotations

from rich.console import Console

from layerforge.errors import AssemblyError, ModelFetchError, PackagingError
from layerforge.models.reports import BuildReport
from layerforge.models.stages import StageRecord, StageState
from layerforge.monitor.renderer import BuildRenderer


def _renderer() -> tuple[BuildRenderer, Console]:
    console = Console(record=True, width=120)
    return BuildRenderer(console=console), console


RECORDS = [
    StageRecord(name="frontend", display_name="Frontend Assets", state=StageState.REUSED,
                fingerprint="a" * 64),
    StageRecord(name="models", display_name="Model Prefetch", state=StageState.FAILED,
                error="fetch failed", duration_seconds=1.5),
    StageRecord(name="assemble", display_name="Artifact Assembler", state=StageState.CANCELLED,
                inputs=["frontend", "models"]),
]


class TestBuildRenderer:
    def test_stage_table(self):
        renderer, console = _renderer()
        console.print(renderer.stage_table(RECORDS))
        text = console.export_text()
        assert "Frontend Assets" in text
        assert "REUSED" in text and "FAILED" in text and "CANCELLED" in text
        assert "fetch failed" in text
        assert "1.5s" in text

    def test_plan_table(self):
        renderer, console = _renderer()
        rows = [
            {"name": "frontend", "display_name": "Frontend Assets", "inputs": [],
             "params": ["build_hash"], "key": "f" * 64, "reuse": True},
            {"name": "assemble", "display_name": "Artifact Assembler", "inputs": ["frontend"],
             "params": [], "key": "", "reuse": False},
        ]
        console.print(renderer.plan_table(rows))
        text = console.export_text()
        assert "reuse" in text and "pending" in text and "unknown" in text

    def test_config_table_marks_disabled(self, make_config):
        renderer, console = _renderer()
        console.print(renderer.config_table(make_config()))
        text = console.export_text()
        assert "reranking_model" in text
        assert "<disabled>" in text

    def test_report_panel(self):
        renderer, console = _renderer()
        report = BuildReport(
            build_id="lf-123", profile="standard", succeeded=True,
            configuration={}, stages=RECORDS[:1], runtime_identity="1000:1000",
            artifact_path="dist/rootfs",
        )
        renderer.print_report(report)
        text = console.export_text()
        assert "Build succeeded" in text
        assert "lf-123" in text and "1000:1000" in text
        assert "Reused: 1/1" in text

    def test_failure_details(self):
        renderer, console = _renderer()
        renderer.print_failure(
            PackagingError("smoke test failed", missing_module="tiktoken", stage="binary",
                           diagnostics="ModuleNotFoundError: No module named 'tiktoken'")
        )
        text = console.export_text()
        assert "binary" in text
        assert "Missing: tiktoken" in text
        assert "No module named 'tiktoken'" in text

    def test_failure_names_model_and_violations(self, make_config):
        renderer, console = _renderer()
        renderer.print_failure(
            ModelFetchError("gone", kind="tokenizer", identifier="cl100k_base", stage="models"),
            make_config(),
        )
        renderer.print_failure(AssemblyError("bad tree", violations=["a", "b"], stage="assemble"))
        text = console.export_text()
        assert "tokenizer:cl100k_base" in text
        assert "Violations: 2" in text
        assert "Build configuration" in text
