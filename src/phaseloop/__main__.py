"""Entry point for `python -m phaseloop` and the `phaseloop` CLI script.

The CLI drives an engine assembled by user code.  ``--engine`` names a
``module:callable`` that takes an ``EngineSettings`` and returns a
``LoopEngine``; the CLI attaches the settings' state store when the factory
did not, restores the last snapshot if there is one, and then applies the
requested command.
"""

from __future__ import annotations

import argparse
import importlib
import json
import logging
from pathlib import Path
from typing import Callable

from phaseloop import get_version
from phaseloop.engine import LoopEngine, RunOutcome
from phaseloop.errors import EngineError
from phaseloop.models import Artifact, ArtifactRef, DecisionAction, HumanDecision, LoopInstance, PhaseStatus
from phaseloop.settings import EngineSettings
from phaseloop.state_store import EngineStateStore

logger = logging.getLogger("phaseloop.cli")

EngineFactory = Callable[[EngineSettings], LoopEngine]


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="phaseloop", description="Drive a phaseloop engine from the command line")
    parser.add_argument("--version", action="version", version=f"%(prog)s {get_version()}")
    parser.add_argument(
        "--engine",
        required=True,
        help="module:callable that builds the LoopEngine from EngineSettings",
    )
    parser.add_argument("--env-file", type=Path, default=Path(".env"), help="Optional .env file with PHASELOOP_* settings")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Start (or continue) the loop tree until it finishes or waits on a human")
    run.add_argument(
        "--artifact",
        action="append",
        default=[],
        metavar="BACKEND:TYPE:ID",
        help="Seed artifact reference for a fresh root (repeatable)",
    )

    commands.add_parser("status", help="Print the loop tree")

    for name, help_text in (
        ("approve", "Decide on an instance paused for approval"),
        ("resolve", "Resolve a blocked instance"),
    ):
        sub = commands.add_parser(name, help=help_text)
        sub.add_argument("instance_id")
        sub.add_argument(
            "--action",
            type=lambda value: value.lower(),
            default=DecisionAction.APPROVE.value,
            choices=[action.value for action in DecisionAction],
        )
        sub.add_argument("--status", default=None, choices=[status.value for status in PhaseStatus])
        sub.add_argument("--artifacts-file", type=Path, default=None, help="JSON list of replacement artifacts")
        sub.add_argument("--rationale", default="")
        sub.add_argument("--no-run", action="store_true", help="Record the decision without running the engine")

    collaborate = commands.add_parser("collaborate", help="Supply the collaborative result for a paused instance")
    collaborate.add_argument("instance_id")
    collaborate.add_argument("--result-file", type=Path, required=True, help="JSON phase result")
    collaborate.add_argument("--no-run", action="store_true")

    abort = commands.add_parser("abort", help="Abort an instance and all of its live descendants")
    abort.add_argument("instance_id")
    abort.add_argument("--reason", default="aborted")

    commands.add_parser("expire", help="Block every approval or collaboration whose timeout has passed")
    return parser.parse_args(argv)


def load_factory(spec: str) -> EngineFactory:
    module_name, _, attribute = spec.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"--engine must look like module:callable, got {spec!r}")
    factory = getattr(importlib.import_module(module_name), attribute, None)
    if not callable(factory):
        raise ValueError(f"{spec} is not a callable")
    return factory


def build_engine(factory: EngineFactory, settings: EngineSettings, repo_root: Path) -> LoopEngine:
    engine = factory(settings)
    if not isinstance(engine, LoopEngine):
        raise TypeError(f"engine factory returned {type(engine).__name__}, expected LoopEngine")
    if engine.state_store is None:
        engine.state_store = EngineStateStore(settings.state_store_path(repo_root), engine_id=settings.engine_id)
    if engine.state_store.has_snapshot():
        engine.restore()
    return engine


def read_json(path: Path) -> object:
    if not path.is_file():
        raise FileNotFoundError(f"JSON input does not exist: {path}")
    return json.loads(path.read_text(encoding="utf-8"))


def decision_from_args(args: argparse.Namespace) -> HumanDecision:
    artifacts = None
    if args.artifacts_file is not None:
        raw = read_json(args.artifacts_file)
        if not isinstance(raw, list):
            raise ValueError(f"{args.artifacts_file} must hold a JSON list of artifacts")
        artifacts = [Artifact.model_validate(item) for item in raw]
    return HumanDecision(
        action=DecisionAction(args.action),
        status=PhaseStatus(args.status) if args.status else None,
        artifacts=artifacts,
        rationale=args.rationale,
    )


def render_tree(engine: LoopEngine) -> list[str]:
    instances = {instance.instance_id: instance for instance in engine.tree.instances()}
    lines: list[str] = []

    def _walk(instance: LoopInstance, depth: int) -> None:
        extras = [f"iteration={instance.iteration}"]
        if instance.wait.value != "none":
            extras.append(instance.wait.value)
        if instance.work_item:
            extras.append(f"item={instance.work_item}")
        if instance.reason:
            extras.append(f"reason={instance.reason}")
        if instance.suspension is not None and instance.suspension.deadline is not None:
            extras.append(f"deadline={instance.suspension.deadline.isoformat()}")
        lines.append(
            f"{'  ' * depth}{instance.instance_id} {instance.level}.{instance.phase} "
            f"[{instance.status.value}] {' '.join(extras)}"
        )
        for child_id in instance.children:
            _walk(instances[child_id], depth + 1)

    if engine.tree.root_id is not None:
        _walk(instances[engine.tree.root_id], 0)
    return lines


def print_outcome(outcome: RunOutcome) -> None:
    print(f"root_status={outcome.root_status.value if outcome.root_status else 'none'}")
    print(f"steps={outcome.steps}")
    if outcome.suspended:
        print(f"suspended={','.join(outcome.suspended)}")
    if outcome.blocked:
        print(f"blocked={','.join(outcome.blocked)}")
    if outcome.next_deadline is not None:
        print(f"next_deadline={outcome.next_deadline.isoformat()}")


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    repo_root = Path.cwd()
    try:
        settings = EngineSettings.from_env(args.env_file)
        engine = build_engine(load_factory(args.engine), settings, repo_root)
    except (OSError, ValueError, TypeError, ImportError) as exc:
        logger.error("Unable to build engine: %s", exc)
        return 1

    try:
        if args.command == "status":
            for line in render_tree(engine) or ["(no loop tree)"]:
                print(line)
            return 0
        if args.command == "expire":
            expired = engine.expire_timeouts()
            print(f"expired={','.join(expired) if expired else 'none'}")
            return 0
        if args.command == "abort":
            aborted = engine.abort(args.instance_id, args.reason)
            print(f"aborted={','.join(aborted)}")
            return 0
        if args.command == "run":
            if engine.tree.root_id is None:
                engine.start([ArtifactRef.parse(value) for value in args.artifact])
            elif args.artifact:
                logger.warning("Ignoring --artifact: the engine already has root %s", engine.tree.root_id)
        elif args.command == "approve":
            engine.approve(args.instance_id, decision_from_args(args))
        elif args.command == "resolve":
            engine.resolve(args.instance_id, decision_from_args(args))
        elif args.command == "collaborate":
            raw = read_json(args.result_file)
            if not isinstance(raw, dict):
                raise ValueError(f"{args.result_file} must hold a JSON object")
            engine.collaborate(args.instance_id, raw)
        if getattr(args, "no_run", False):
            return 0
        outcome = engine.run()
    except (EngineError, OSError, ValueError) as exc:
        logger.error("%s failed: %s", args.command, exc)
        return 1

    print_outcome(outcome)
    return 0 if outcome.root_status is None or outcome.root_status.value != "failed" else 1


if __name__ == "__main__":
    raise SystemExit(main())
