"""
cred-tool command line entry point.

Mints a one-time GitHub Actions JIT runner configuration for a Caliptra FPGA
board and hands it to the runner. Exit code 0 on success; each failure
category has its own non-zero code (see cred_tool.core.errors).
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Any, List, Optional

from pydantic import ValidationError

from cred_tool import __version__
from cred_tool.core.config import STAGE_PRESETS, Settings, load_settings
from cred_tool.core.errors import ConfigurationError, DeliveryFailure
from cred_tool.core.metrics import write_metrics
from cred_tool.core.retry import Clock, RetryPolicy
from cred_tool.models.credentials import AppIdentity
from cred_tool.models.runner import FpgaTarget, RunnerScope, RunnerSpec, runner_labels, runner_name
from cred_tool.services.delivery import CredentialDelivery, ExecDelivery, delivery_from_settings
from cred_tool.services.orchestrator import Orchestrator, PipelineResult
from cred_tool.services.runner_tokens import GitHubRunnerTokenRequester
from cred_tool.services.signer import JoseSigner
from cred_tool.services.token_exchange import GitHubTokenExchanger

logger = logging.getLogger("cred_tool")


def fpga_target(value: str) -> FpgaTarget:
    try:
        return FpgaTarget(value.lower())
    except ValueError:
        choices = ", ".join(t.value for t in FpgaTarget)
        raise argparse.ArgumentTypeError(f"invalid choice: '{value}' (choose from {choices})") from None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cred-tool",
        description="Generate GitHub Actions runner JIT tokens for Caliptra FPGA runners.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "-s", "--stage", type=str.lower, choices=sorted(STAGE_PRESETS), help="Deployment stage preset"
    )
    parser.add_argument(
        "-f",
        "--fpga-target",
        type=fpga_target,
        choices=list(FpgaTarget),
        metavar="{" + ",".join(t.value for t in FpgaTarget) + "}",
        help="FPGA board type; selects runner labels and name prefix",
    )
    parser.add_argument("-i", "--fpga-identifier", help="Number differentiating boards at one location")
    parser.add_argument("-l", "--location", help="Physical location of the runner, e.g. 'kir'")
    parser.add_argument("-k", "--key-path", help="GitHub App private key (PEM)")
    parser.add_argument("-d", "--dry-run", action="store_true", help="Use staging labels")
    parser.add_argument("--app-id", help="GitHub App id (overrides the stage preset)")
    parser.add_argument("--installation-id", type=int, help="GitHub App installation id")
    parser.add_argument("--scope", help="org/<org>, repo/<owner>/<name> or <owner>/<name>")
    parser.add_argument("--runner-name", help="Explicit runner name instead of the derived one")
    parser.add_argument(
        "--label", action="append", default=[], help="Extra runner label (repeatable)"
    )
    parser.add_argument("--runner-group-id", type=int, help="Runner group id (default 1)")
    parser.add_argument("--api-url", help="GitHub API URL (GHES: https://<host>/api/v3)")
    parser.add_argument(
        "-o", "--output", help="stdout (default), file:<path> or exec:<runner command>"
    )
    parser.add_argument("--output-mode", help="File mode for file: output, octal (default 600)")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")
    return parser


def configure_logging(level: str) -> None:
    # stdout carries the token; everything else goes to stderr.
    logging.basicConfig(
        level=level,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        force=True,
    )


def settings_from_args(args: argparse.Namespace) -> Settings:
    return load_settings(
        args.stage,
        GITHUB_APP_ID=args.app_id,
        GITHUB_INSTALLATION_ID=args.installation_id,
        GITHUB_API_URL=args.api_url,
        KEY_PATH=args.key_path,
        RUNNER_SCOPE=args.scope,
        RUNNER_GROUP_ID=args.runner_group_id,
        OUTPUT=args.output,
        OUTPUT_FILE_MODE=args.output_mode,
        LOG_LEVEL=args.log_level,
    )


def build_identity(settings: Settings) -> AppIdentity:
    settings.require("GITHUB_APP_ID", "KEY_PATH")
    try:
        return AppIdentity(
            key_path=settings.KEY_PATH,
            issuer=settings.GITHUB_APP_ID,
            audience=settings.JWT_AUDIENCE,
        )
    except ValidationError as e:
        details = "; ".join(f"{err['loc'][0]}: {err['msg']}" for err in e.errors())
        raise ConfigurationError(f"Invalid App identity: {details}") from None


def build_runner_spec(args: argparse.Namespace, settings: Settings) -> RunnerSpec:
    settings.require("RUNNER_SCOPE")
    try:
        scope = RunnerScope.parse(settings.RUNNER_SCOPE)
    except ValueError as e:
        raise ConfigurationError(f"Invalid runner scope {settings.RUNNER_SCOPE!r}: {e}") from None

    name = args.runner_name
    if not name:
        if not (args.fpga_target and args.fpga_identifier and args.location):
            raise ConfigurationError(
                "Either --runner-name or all of --fpga-target, --fpga-identifier "
                "and --location are required"
            )
        name = runner_name(args.fpga_target, args.fpga_identifier, args.location)

    labels: List[str] = []
    if args.fpga_target:
        labels.extend(runner_labels(args.fpga_target, args.dry_run))
    labels.extend(args.label)

    try:
        return RunnerSpec(
            name=name,
            labels=labels,
            scope=scope,
            runner_group_id=settings.RUNNER_GROUP_ID,
            work_folder=settings.RUNNER_WORK_FOLDER,
        )
    except ValidationError as e:
        details = "; ".join(err["msg"] for err in e.errors())
        raise ConfigurationError(f"Invalid runner spec: {details}") from None


def build_orchestrator(
    settings: Settings,
    identity: AppIdentity,
    runner_spec: RunnerSpec,
    delivery: CredentialDelivery,
    clock: Optional[Clock] = None,
    **client_kwargs: Any,
) -> Orchestrator:
    """Wire the GitHub-backed stages from one Settings object."""
    retry = RetryPolicy.from_settings(settings, clock=clock)
    return Orchestrator(
        identity=identity,
        runner_spec=runner_spec,
        signer=JoseSigner.from_settings(settings, clock=clock),
        exchanger=GitHubTokenExchanger.from_settings(settings, retry, **client_kwargs),
        requester=GitHubRunnerTokenRequester.from_settings(settings, retry, **client_kwargs),
        delivery=delivery,
        assertion_ttl=settings.JWT_TTL_SECONDS,
    )


async def run_pipeline(orchestrator: Orchestrator, timeout: Optional[float]) -> PipelineResult:
    """Run the orchestrator under a deadline, cancelling it on SIGINT/SIGTERM."""
    loop = asyncio.get_running_loop()
    task = asyncio.ensure_future(orchestrator.run())

    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, task.cancel)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            logger.debug(f"Cannot install handler for {sig.name} on this platform")

    try:
        return await asyncio.wait_for(task, timeout)
    except asyncio.TimeoutError:
        logger.error(f"Pipeline deadline of {timeout:.0f}s exceeded")
        return orchestrator.result
    except asyncio.CancelledError:
        logger.error("Pipeline interrupted by signal")
        return orchestrator.result
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = settings_from_args(args)
        configure_logging(settings.LOG_LEVEL)
        if args.stage:
            logger.info(f"Running for stage: {args.stage}")
        identity = build_identity(settings)
        runner_spec = build_runner_spec(args, settings)
        delivery = delivery_from_settings(settings)
    except ConfigurationError as e:
        print(f"error: {e.describe()}", file=sys.stderr)
        return e.exit_code

    orchestrator = build_orchestrator(settings, identity, runner_spec, delivery)
    result = asyncio.run(run_pipeline(orchestrator, settings.PIPELINE_TIMEOUT_SECONDS))
    write_metrics(settings.METRICS_TEXTFILE)

    if result.error is not None:
        print(f"error: {result.error.describe()}", file=sys.stderr)
        return result.exit_code

    if isinstance(delivery, ExecDelivery) and delivery.ready:
        try:
            delivery.launch()
        except DeliveryFailure as e:
            print(f"error: {e.describe()}", file=sys.stderr)
            return e.exit_code
    return result.exit_code


if __name__ == "__main__":
    sys.exit(main())
