from pathlib import Path

import pytest
from pydantic import ValidationError

from cfstager.errors import FormatError, MissingStartCommand
from cfstager.schemas import BuildResult, PipelineState, StagingRequest, is_remote_buildpack, md5_hex


def _request(**overrides) -> StagingRequest:
    fields = dict(
        image_ref="cfstager/myapp",
        base_image_ref="cloudfoundry/windows2016fs:1803",
        stack="windows2016",
        app_path=Path("/src/app"),
        buildpacks=["https://example.invalid/hwc.zip"],
    )
    fields.update(overrides)
    return StagingRequest(**fields)


def test_md5_hex_matches_known_digest():
    assert md5_hex("") == "d41d8cd98f00b204e9800998ecf8427e"
    assert _request().image_key == md5_hex("cfstager/myapp")


def test_remote_buildpack_detection():
    assert is_remote_buildpack("https://example.invalid/bp.zip")
    assert is_remote_buildpack("http://example.invalid/bp.zip")
    assert not is_remote_buildpack("/tmp/bp.zip")
    assert not is_remote_buildpack("ftp://example.invalid/bp.zip")


def test_request_requires_a_buildpack():
    with pytest.raises(ValidationError):
        _request(buildpacks=[])
    with pytest.raises(ValidationError):
        _request(buildpacks=["  "])


def test_request_strips_buildpack_locators():
    request = _request(buildpacks=[" a.zip ", "b.zip"])
    assert request.buildpacks == ["a.zip", "b.zip"]
    assert request.multi_buildpack
    assert request.windows
    assert not _request(stack="cflinuxfs3").windows


def test_request_is_immutable():
    request = _request()
    with pytest.raises(ValidationError):
        request.image_ref = "other"


def test_build_result_web_command():
    result = BuildResult.parse(b'{"process_types": {"web": "  .\\\\hwc.exe  "}, "lifecycle_type": "buildpack"}')
    assert result.web_command() == ".\\hwc.exe"


@pytest.mark.parametrize(
    "payload",
    [b"{}", b'{"process_types": null}', b'{"process_types": {"web": ""}}', b'{"process_types": {"worker": "x"}}'],
)
def test_build_result_without_web_is_missing_start_command(payload):
    with pytest.raises(MissingStartCommand):
        BuildResult.parse(payload).web_command()


@pytest.mark.parametrize("payload", [b"not json", b"[1, 2]", b'{"process_types": {"web": 1}}', b"\xff\xfe"])
def test_build_result_rejects_malformed_documents(payload):
    with pytest.raises(FormatError):
        BuildResult.parse(payload)


def test_terminal_states():
    assert PipelineState.COMMITTED.terminal
    assert PipelineState.FAILED.terminal
    assert not PipelineState.BUILD_RUNNING.terminal
