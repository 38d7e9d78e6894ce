import io
from pathlib import Path

import pytest
from rich.console import Console

from cfstager.config import StagerConfig, build_paths
from cfstager.errors import ArtifactIOError, FormatError, NonZeroExit
from cfstager.orchestrator import RunOrchestrator, build_request, run_instructions
from cfstager.schemas import md5_hex

from conftest import LIFECYCLE, WEB_COMMAND, FakeEngine


HWC = "https://github.com/cloudfoundry/hwc-buildpack/releases/download/v3.1.3/hwc-buildpack-windows2016-v3.1.3.zip"


def _config(tmp_path: Path) -> StagerConfig:
    config = StagerConfig(paths=build_paths(tmp_path / "state"))
    config.paths.state_dir.mkdir(parents=True)
    config.paths.lifecycle_path.write_bytes(LIFECYCLE)
    return config


def _orchestrator(config: StagerConfig, engine: FakeEngine) -> RunOrchestrator:
    captured = {}

    def factory(engine_config):
        captured["engine_config"] = engine_config
        return engine

    orchestrator = RunOrchestrator(
        config,
        engine_factory=factory,
        console=Console(file=io.StringIO()),
        stdout=io.BytesIO(),
        stderr=io.BytesIO(),
    )
    orchestrator.captured = captured
    return orchestrator


def test_build_request_resolves_app_path(app_dir: Path, monkeypatch):
    monkeypatch.chdir(app_dir.parent)
    request = build_request("cfstager/myapp", "base:1", "windows2016", Path("app"), [HWC])
    assert request.app_path == app_dir.resolve()
    assert request.buildpacks == [HWC]


def test_build_request_rejects_missing_app(tmp_path: Path):
    with pytest.raises(ArtifactIOError) as excinfo:
        build_request("img", "base", "windows2016", tmp_path / "missing", [HWC])
    assert excinfo.value.operation == "resolve app path"


def test_build_request_rejects_empty_buildpacks(app_dir: Path):
    with pytest.raises(FormatError):
        build_request("img", "base", "windows2016", app_dir, [])


def test_run_instructions_name_container_after_image():
    text = run_instructions("cfstager/myapp")
    name = md5_hex("cfstager/myapp")
    assert f"docker run --rm --name={name} -d -e PORT=8080 -p 8080:8080 cfstager/myapp" in text
    assert f"docker kill {name}" in text


def test_execute_stages_and_closes_engine(tmp_path: Path, app_dir: Path):
    config = _config(tmp_path)
    config.build_binds = ["nuget:/home/vcap/.nuget"]
    engine = FakeEngine()
    orchestrator = _orchestrator(config, engine)

    staged = orchestrator.execute(build_request("cfstager/myapp", "cloudfoundry/windows2016fs:1803", "windows2016", app_dir, [HWC]))

    assert staged.start_command == WEB_COMMAND
    assert orchestrator.captured["engine_config"] is config.engine
    assert engine.closed
    assert engine.by_role("build").binds == ["nuget:/home/vcap/.nuget"]
    assert engine.by_role("build").injected_at("/")[0] == LIFECYCLE


def test_execute_closes_engine_on_failure(tmp_path: Path, app_dir: Path):
    engine = FakeEngine(exit_code=1)
    orchestrator = _orchestrator(_config(tmp_path), engine)

    with pytest.raises(NonZeroExit):
        orchestrator.execute(build_request("img", "cloudfoundry/windows2016fs:1803", "windows2016", app_dir, [HWC]))

    assert engine.closed


def test_execute_passes_skip_cert_verify(tmp_path: Path, app_dir: Path):
    config = _config(tmp_path)
    config.lifecycle.skip_cert_verify = True
    engine = FakeEngine()

    _orchestrator(config, engine).execute(
        build_request("img", "cloudfoundry/windows2016fs:1803", "windows2016", app_dir, [HWC])
    )

    assert "-skipCertVerify" in engine.by_role("build").command
