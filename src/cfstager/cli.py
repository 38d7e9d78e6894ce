from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional, Tuple

import click
from rich.console import Console

from .config import StagerConfig, load_config
from .errors import StagingError
from .logging_config import configure_logging
from .orchestrator import RunOrchestrator, build_request, run_instructions


DEFAULT_IMAGE = "cfstager/myapp"
DEFAULT_BASE_IMAGE = "cloudfoundry/windows2016fs:1803"
DEFAULT_STACK = "windows2016"
DEFAULT_BUILDPACK = (
    "https://github.com/cloudfoundry/hwc-buildpack/releases/download/v3.1.3/hwc-buildpack-windows2016-v3.1.3.zip"
)

console = Console()


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(package_name="cfstager", message="cfstager %(version)s")
def main() -> None:
    """Stage applications into container images with Cloud Foundry buildpacks."""


@main.command()
@click.option("--image", default=DEFAULT_IMAGE, show_default=True, help="Name of the image to build.")
@click.option(
    "--base",
    default=DEFAULT_BASE_IMAGE,
    show_default=True,
    help="Image to stage on; it must be able to run the lifecycle.",
)
@click.option("--stack", default=DEFAULT_STACK, show_default=True, help="Stack name of the image.")
@click.option(
    "--app",
    "app_path",
    type=click.Path(path_type=Path),
    default=Path("."),
    show_default=True,
    help="Path to the app to stage.",
)
@click.option(
    "--buildpack",
    "buildpacks",
    multiple=True,
    default=(DEFAULT_BUILDPACK,),
    help="Buildpack to use, either an http(s) URL or a local zip file. Repeat for multi-buildpack staging.",
)
@click.option("--config", "config_path", type=click.Path(exists=True, path_type=Path), default=None)
@click.option("--timeout", type=float, default=None, help="Kill the build container after this many seconds.")
@click.option("--pull", "always_pull", is_flag=True, default=False, help="Pull the base image even if present.")
@click.option("--skip-cert-verify", is_flag=True, default=False, help="Let the builder skip TLS verification.")
@click.option("--verbose", is_flag=True, default=False, help="Increase logging verbosity.")
def stage(
    image: str,
    base: str,
    stack: str,
    app_path: Path,
    buildpacks: Tuple[str, ...],
    config_path: Optional[Path],
    timeout: Optional[float],
    always_pull: bool,
    skip_cert_verify: bool,
    verbose: bool,
) -> None:
    """Build IMAGE from the app at --app by running the buildpack lifecycle."""

    logger = configure_logging(verbose=verbose, logger_name="cfstager.cli")

    try:
        config = _prepare_config(config_path, timeout, always_pull, skip_cert_verify)
        request = build_request(image=image, base=base, stack=stack, app=app_path, buildpacks=buildpacks)
        logger.info("Buildpacks: %s", ", ".join(request.buildpacks))
        staged = RunOrchestrator(config, console=console).execute(request)
    except StagingError as exc:
        click.echo(click.style(f"ERROR: {exc}", fg="red"), err=True)
        sys.exit(1)

    click.echo("")
    click.echo(click.style(f"Staged {staged.reference} (start command: {staged.start_command})", fg="green"))
    click.echo(run_instructions(staged.reference))


def _prepare_config(
    config_path: Optional[Path],
    timeout: Optional[float],
    always_pull: bool,
    skip_cert_verify: bool,
) -> StagerConfig:
    config = load_config(config_path)
    if timeout is not None:
        config.run_timeout = timeout
    if always_pull:
        config.always_pull = True
    if skip_cert_verify:
        config.lifecycle.skip_cert_verify = True
    return config


if __name__ == "__main__":  # pragma: no cover
    main()
