"""Integration tests: full builds through the BuildOrchestrator.

External tools and model downloads are faked (see ``tests/conftest.py``);
everything else - resolution, scheduling, caching, assembly, publishing and
reporting - runs for real against temp directories.
"""

from __future__ import annotations

import json
import os
import tarfile

import pytest

from layerforge import BuildOrchestrator
from layerforge.core.dependencies import RUNTIME_PYTHON
from layerforge.core.orchestrator import ARCHIVE_NAME, REPORT_NAME, ROOTFS_LINK
from layerforge.errors import ConfigurationError, ModelFetchError, PackagingError
from layerforge.models.cache import ModelKind
from layerforge.models.stages import StageState
from layerforge.stages.assemble import IMAGE_CONFIG


@pytest.fixture
def orchestrator_factory(settings, frontend_dir, backend_dir, runner, fetcher):
    def _make(runner=runner, fetcher=fetcher, **kwargs):
        return BuildOrchestrator(
            frontend_dir,
            backend_dir,
            settings=settings,
            runner=runner,
            fetchers={kind: fetcher for kind in ModelKind},
            **kwargs,
        )

    return _make


def _ids(runtime_ids):
    return {"uid": runtime_ids[0], "gid": runtime_ids[1]}


class TestEnvironmentBuild:
    def test_standard_profile_end_to_end(self, orchestrator_factory, settings, runtime_ids):
        forge = orchestrator_factory()
        config = forge.resolve({**_ids(runtime_ids), "build_hash": "abc"}, profile="standard")
        report = forge.build(config)

        out = settings.output_dir
        assert report.succeeded
        assert report.runtime_identity == "%d:%d" % runtime_ids
        assert report.entrypoint == ["/usr/bin/tini", "--", "/app/start.sh"]
        assert [r.state for r in report.stages] == [StageState.COMPLETE] * 4

        rootfs = out / ROOTFS_LINK
        assert rootfs.is_symlink()
        assert (rootfs / "app" / "build" / "index.html").is_file()
        assert (rootfs / "app" / "VERSION").read_text() == "abc\n"

        written = json.loads((out / REPORT_NAME).read_text())
        assert written["succeeded"] is True
        assert written["configuration"]["build_hash"] == "abc"
        assert [s["name"] for s in written["stages"]] == ["frontend", "backend-env", "models", "assemble"]

    def test_second_build_reuses_expensive_stages(
        self, orchestrator_factory, make_fetcher, runtime_ids, runner
    ):
        fetcher = make_fetcher()
        forge = orchestrator_factory(fetcher=fetcher)
        config = forge.resolve(_ids(runtime_ids))
        forge.build(config)
        calls, fetches = len(runner.calls), len(fetcher.calls)

        report = forge.build(config)
        states = {r.name: r.state for r in report.stages}
        assert states == {
            "frontend": StageState.REUSED,
            "backend-env": StageState.REUSED,
            "models": StageState.REUSED,
            "assemble": StageState.COMPLETE,
        }
        assert len(runner.calls) == calls
        assert len(fetcher.calls) == fetches

    def test_model_change_refetches_only_models(self, orchestrator_factory, make_fetcher, runtime_ids):
        fetcher = make_fetcher()
        forge = orchestrator_factory(fetcher=fetcher)
        forge.build(forge.resolve(_ids(runtime_ids)))
        fetcher.calls.clear()

        report = forge.build(forge.resolve({**_ids(runtime_ids), "reranking_model": "BAAI/bge-reranker-base"}))
        states = {r.name: r.state for r in report.stages}
        assert states["frontend"] == StageState.REUSED
        assert states["backend-env"] == StageState.REUSED
        assert states["models"] == StageState.COMPLETE
        assert fetcher.calls == ["BAAI/bge-reranker-base"]

    def test_export_archive(self, orchestrator_factory, settings, runtime_ids):
        forge = orchestrator_factory()
        report = forge.build(forge.resolve(_ids(runtime_ids)), export_archive=True)
        archive = settings.output_dir / ARCHIVE_NAME
        assert report.archive_path == str(archive)
        with tarfile.open(archive) as tar:
            owners = {(m.uid, m.gid) for m in tar.getmembers()}
        assert owners == {runtime_ids}

    def test_unprivileged_builder_publishes_owned_archive(
        self, orchestrator_factory, settings, runtime_ids, monkeypatch
    ):
        if os.geteuid() == 0:
            pytest.skip("a privileged builder always owns the tree directly")
        monkeypatch.setattr("layerforge.stages.assemble.can_apply_ownership", lambda _identity: False)
        forge = orchestrator_factory()
        report = forge.build(forge.resolve({"uid": 4242, "gid": 4343}))

        assert report.archive_path
        with tarfile.open(report.archive_path) as tar:
            assert {(m.uid, m.gid) for m in tar.getmembers()} == {(4242, 4343)}


class TestSingleBinaryBuild:
    def test_single_binary_profile(self, orchestrator_factory, settings, runtime_ids, runner):
        forge = orchestrator_factory()
        report = forge.build(forge.resolve(_ids(runtime_ids), profile="single-binary"))

        assert report.succeeded
        assert [r.name for r in report.stages] == [
            "frontend", "backend-env", "models", "binary", "assemble",
        ]
        rootfs = settings.output_dir / ROOTFS_LINK
        assert os.access(rootfs / "app" / "backend_app", os.X_OK)
        assert "pyinstaller" in runner.tools()
        assert "backend_app" in runner.tools()

    def test_missing_hidden_import_fails_build(self, orchestrator_factory, settings, runtime_ids):
        forge = orchestrator_factory(
            pipeline_options={"hidden_imports": ["torch", "sentence_transformers", "faster_whisper"]}
        )
        with pytest.raises(PackagingError) as info:
            forge.build(forge.resolve(_ids(runtime_ids), profile="single-binary"))

        assert info.value.missing_module == "tiktoken"
        out = settings.output_dir
        assert not (out / ROOTFS_LINK).exists()
        report = json.loads((out / REPORT_NAME).read_text())
        assert report["succeeded"] is False
        assert report["failed_stage"] == "binary"
        states = {s["name"]: s["state"] for s in report["stages"]}
        assert states["binary"] == "failed"
        assert states["assemble"] == "cancelled"


class TestFailures:
    def test_model_failure_names_the_model(self, orchestrator_factory, make_fetcher, settings, runtime_ids):
        forge = orchestrator_factory(fetcher=make_fetcher(corrupt=["cl100k_base"]))
        with pytest.raises(ModelFetchError) as info:
            forge.build(forge.resolve(_ids(runtime_ids)))

        assert info.value.kind == "tokenizer"
        report = json.loads((settings.output_dir / REPORT_NAME).read_text())
        assert report["failed_stage"] == "models"
        assert "cl100k_base" in report["error"]

    def test_retry_after_model_failure_reuses_finished_work(
        self, orchestrator_factory, make_fetcher, runner, runtime_ids
    ):
        config_ids = _ids(runtime_ids)
        broken = orchestrator_factory(fetcher=make_fetcher(corrupt=["cl100k_base"]))
        with pytest.raises(ModelFetchError):
            broken.build(broken.resolve(config_ids))

        healthy_fetcher = make_fetcher()
        healthy = orchestrator_factory(fetcher=healthy_fetcher)
        report = healthy.build(healthy.resolve(config_ids))
        states = {r.name: r.state for r in report.stages}
        assert states["models"] == StageState.COMPLETE
        assert healthy_fetcher.calls == ["cl100k_base", "base"]

    def test_plan_after_build(self, orchestrator_factory, runtime_ids):
        forge = orchestrator_factory()
        config = forge.resolve(_ids(runtime_ids))
        forge.build(config)
        rows = forge.plan(config)
        assert [row["reuse"] for row in rows] == [True, True, True, False]

class TestConfigurationChecks:
    def test_matrix_missing_stage_parameters_runs_nothing(
        self, orchestrator_factory, tmp_dir, settings, runner, runtime_ids
    ):
        matrix = tmp_dir / "matrix.toml"
        matrix.write_text(
            '[parameters.uid]\ntype = "int"\ndefault = %d\n\n'
            '[parameters.gid]\ntype = "int"\ndefault = %d\n' % runtime_ids
        )
        forge = orchestrator_factory(matrix_path=matrix)
        config = forge.resolve()

        with pytest.raises(ConfigurationError, match="build_hash") as info:
            forge.build(config)
        assert "thread_count" in str(info.value)
        assert runner.calls == []
        assert forge.store.list_artifacts() == []
        with pytest.raises(ConfigurationError):
            forge.plan(config)

    def test_musl_base_rejected_before_any_stage(self, orchestrator_factory, runner, runtime_ids):
        forge = orchestrator_factory()
        config = forge.resolve({**_ids(runtime_ids), "base_flavor": "alpine"})
        with pytest.raises(ConfigurationError, match="debian-slim"):
            forge.build(config)
        assert runner.calls == []

    def test_image_config_names_the_interpreter(self, orchestrator_factory, settings, runtime_ids):
        forge = orchestrator_factory()
        forge.build(forge.resolve(_ids(runtime_ids)))
        tree = (settings.output_dir / ROOTFS_LINK).resolve().parent
        image = json.loads((tree / IMAGE_CONFIG).read_text())
        assert image["base"]["python"] == RUNTIME_PYTHON
        assert f"python{RUNTIME_PYTHON}" in image["base"]["system_packages"]
