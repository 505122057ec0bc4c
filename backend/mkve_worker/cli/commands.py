"""
mkve-worker command line.

Commands:
- classify: Print the JobDescription for an argument list
- estimate: Print the ResourceBudget for a size and operation kind
- run: Run one job through the simulated engine, printing every message
- serve: Run the HTTP/WebSocket worker with uvicorn

Design Principles:
- CLI is a dispatcher only
- Output is JSON on stdout; diagnostics go to stderr
- Exit non-zero on failure

Exit Codes:
- 0: Success
- 1: Validation error (classification or admission)
- 2: Execution error
- 4: System error (configuration file, bad arguments)
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from ..config import WorkerConfig, load_config
from ..execution.simulated import SimulatedEngine, SimulatedMedia
from ..jobs.arguments import classify
from ..jobs.errors import ClassificationError
from ..jobs.machine import JobStateMachine
from ..jobs.models import JobState, OperationKind
from ..protocol.channel import MemoryChannel
from ..protocol.messages import _Message
from ..resources.estimator import estimate
from .errors import CLIError, ConfigLoadError

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_VALIDATION = 1
EXIT_EXECUTION = 2
EXIT_SYSTEM = 4

CLI_JOB_ID = "cli"


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%H:%M:%S',
        stream=sys.stderr,
    )


def _load_worker_config(path: Optional[str]) -> WorkerConfig:
    """
    Defaults, then the optional JSON file, then environment overrides.

    Raises:
        ConfigLoadError: If the file is missing or invalid
    """
    base = None
    if path:
        try:
            base = load_config(Path(path))
        except FileNotFoundError:
            raise ConfigLoadError(path, "file not found")
        except ValueError as e:
            raise ConfigLoadError(path, str(e))
    try:
        return WorkerConfig.from_env(base)
    except ValueError as e:
        raise ConfigLoadError("environment", str(e))


def _strip_separator(tokens: Sequence[str]) -> List[str]:
    tokens = list(tokens)
    if tokens and tokens[0] == "--":
        return tokens[1:]
    return tokens


def _print_json(data) -> None:
    print(json.dumps(data, sort_keys=False))


def cmd_classify(args: argparse.Namespace, config: WorkerConfig) -> int:
    """
    Classify an argument list.

    Exit codes:
        0: Classified
        1: Missing input or output
    """
    tokens = _strip_separator(args.tokens)
    try:
        description = classify(tokens, config)
    except ClassificationError as e:
        print(f"✗ {e.reason.value}: {e}", file=sys.stderr)
        return EXIT_VALIDATION

    _print_json(description.model_dump(mode="json"))
    return EXIT_OK


def cmd_estimate(args: argparse.Namespace, config: WorkerConfig) -> int:
    """
    Estimate the memory budget for an input.

    Exit codes:
        0: Within the ceiling
        1: Over the ceiling
        4: Invalid size
    """
    try:
        budget = estimate(args.size, args.kind, ceiling_mb=args.ceiling, config=config)
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_SYSTEM

    _print_json(budget.model_dump(mode="json"))
    return EXIT_OK if budget.within_ceiling else EXIT_VALIDATION


async def run_job(
    tokens: Sequence[str],
    config: WorkerConfig,
    engine: SimulatedEngine,
    input_size: Optional[int] = None,
    job_id: str = CLI_JOB_ID,
) -> Tuple[JobState, List[_Message]]:
    """
    Submit and run one job on an in-memory channel.

    Returns:
        The final job state and every message sent, in order
    """
    channel = MemoryChannel()
    machine = JobStateMachine(job_id, tokens, config, engine, channel, input_size=input_size)

    await machine.submit()
    if machine.state == JobState.ADMITTED:
        await machine.run()

    return machine.state, list(channel.sent)


def cmd_run(args: argparse.Namespace, config: WorkerConfig) -> int:
    """
    Run a job and print each protocol message as a JSON line.

    Exit codes:
        0: Completed
        1: Rejected (classification or admission)
        2: Execution failed
    """
    tokens = _strip_separator(args.tokens)
    engine = SimulatedEngine(
        stage_delay=args.stage_delay,
        write_to_disk=args.write,
        features=config.features,
        version=config.version,
    )

    if args.virtual_size is not None:
        # Register every input in memory so no file needs to exist
        try:
            description = classify(tokens, config)
        except ClassificationError:
            description = None
        if description is not None:
            for path in description.input_paths:
                engine.add_media(path, SimulatedMedia(size_bytes=args.virtual_size))

    state, messages = asyncio.run(run_job(tokens, config, engine, input_size=args.input_size))

    for message in messages:
        _print_json(message.to_wire())

    if state == JobState.COMPLETED:
        return EXIT_OK
    if state == JobState.REJECTED:
        return EXIT_VALIDATION
    return EXIT_EXECUTION


def cmd_serve(args: argparse.Namespace, config: WorkerConfig) -> int:
    """Run the worker app until interrupted."""
    import uvicorn

    from ..main import create_app

    app = create_app(config=config)
    print(f"Starting MKVE worker on {args.host}:{args.port}", file=sys.stderr)
    uvicorn.run(app, host=args.host, port=args.port)
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='mkve-worker',
        description='MKVE worker - job protocol for an out-of-process media engine',
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Log debug output to stderr'
    )
    parser.add_argument(
        '--config',
        default=None,
        help='Path to a JSON WorkerConfig file'
    )

    # --config is also accepted after the subcommand, where it takes precedence
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        '--config',
        default=argparse.SUPPRESS,
        help='Path to a JSON WorkerConfig file'
    )

    subparsers = parser.add_subparsers(dest='command', required=True, help='Command to execute')

    # Classify command
    parser_classify = subparsers.add_parser(
        'classify',
        parents=[common],
        help='Classify an argument list without running it'
    )
    parser_classify.add_argument(
        'tokens',
        nargs=argparse.REMAINDER,
        help='Argument list, e.g. -- -i movie.mkv -c:a libmp3lame out.mp3'
    )
    parser_classify.set_defaults(func=cmd_classify)

    # Estimate command
    parser_estimate = subparsers.add_parser(
        'estimate',
        parents=[common],
        help='Estimate the memory budget for an input'
    )
    parser_estimate.add_argument(
        '--size',
        type=int,
        required=True,
        help='Input size in bytes'
    )
    parser_estimate.add_argument(
        '--kind',
        choices=[kind.value for kind in OperationKind],
        default=OperationKind.GENERIC.value,
        help='Operation kind (default: generic)'
    )
    parser_estimate.add_argument(
        '--ceiling',
        type=int,
        default=None,
        help='Ceiling in MB (default: from configuration)'
    )
    parser_estimate.set_defaults(func=cmd_estimate)

    # Run command
    parser_run = subparsers.add_parser(
        'run',
        parents=[common],
        help='Run one job on the simulated engine'
    )
    parser_run.add_argument(
        '--input-size',
        type=int,
        default=None,
        help='Declared input size in bytes (default: size on disk)'
    )
    parser_run.add_argument(
        '--virtual-size',
        type=int,
        default=None,
        help='Treat every input as an in-memory file of this many bytes'
    )
    parser_run.add_argument(
        '--stage-delay',
        type=float,
        default=0.0,
        help='Seconds each engine operation takes (default: 0)'
    )
    parser_run.add_argument(
        '--write',
        action='store_true',
        help='Write the output file to disk'
    )
    parser_run.add_argument(
        'tokens',
        nargs=argparse.REMAINDER,
        help='Argument list after --'
    )
    parser_run.set_defaults(func=cmd_run)

    # Serve command
    parser_serve = subparsers.add_parser(
        'serve',
        parents=[common],
        help='Serve the HTTP/WebSocket worker'
    )
    parser_serve.add_argument(
        '--host',
        default='127.0.0.1',
        help='Bind address (default: 127.0.0.1)'
    )
    parser_serve.add_argument(
        '--port',
        type=int,
        default=8090,
        help='Port (default: 8090)'
    )
    parser_serve.set_defaults(func=cmd_serve)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    Main CLI entrypoint.

    Parses arguments and dispatches to subcommands.

    Returns:
        Process exit code
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    try:
        config = _load_worker_config(args.config)
    except CLIError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_SYSTEM

    return args.func(args, config)
