"""Fleet-sync diff action."""

from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import logging
from typing import cast, Any

from fleet_sync.diff import Action, DiffResult, render_diff
from fleet_sync.exceptions import FleetException

from .common import add_config_flags, open_fleet
from .format import YamlFormatter, JsonFormatter

_LOGGER = logging.getLogger(__name__)


def _summary(name: str, revision: str, result: DiffResult) -> dict[str, Any]:
    return {
        "application": name,
        "revision": revision,
        "actions": [
            {
                "resource": str(item.resource_id),
                "action": str(item.action),
                **({"changes": list(item.changes)} if item.changes else {}),
            }
            for item in result.actions
            if item.action != Action.NOOP
        ],
        "orphans": [str(orphan.resource_id) for orphan in result.orphans],
    }


class DiffAction:
    """Fleet-sync diff action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "diff",
                help="Diff applications against their clusters",
                description="""Compare the desired state of each application at its
                    target revision with the live state of its destination cluster
                    and print the changes a sync would make, without applying them.""",
            ),
        )
        add_config_flags(args)
        args.add_argument(
            "--app",
            "-a",
            action="append",
            dest="apps",
            help="Application to diff, may be repeated (default: all applications)",
        )
        args.add_argument(
            "--output",
            "-o",
            choices=["diff", "yaml", "json"],
            default="diff",
            help="Output format of the command",
        )
        args.add_argument(
            "--unified",
            "-u",
            type=int,
            default=3,
            help="output NUM (default 3) lines of unified context",
        )
        args.add_argument(
            "--limit-bytes",
            help="Maximum bytes for each diff output (0=unlimited)",
            type=int,
            default=0,
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        apps: list[str] | None,
        output: str,
        unified: int,
        limit_bytes: int,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        summaries: list[dict[str, Any]] = []
        async with open_fleet(
            kwargs["config"], kwargs["kubectl"], kwargs["cache_dir"]
        ) as fleet:
            names = apps or [app.name for app in fleet.registry.list()]
            for name in names:
                if name not in fleet.registry:
                    raise FleetException(f"Application '{name}' not found in fleet")
                manifests, result = await fleet.reconciler.plan(name)
                if output != "diff":
                    summaries.append(_summary(name, manifests.revision, result))
                    continue
                for item in result.actions:
                    for line in render_diff(item, n=unified, limit_bytes=limit_bytes):
                        print(line, end="" if line.endswith("\n") else "\n")
                if result.orphans and not fleet.registry.get(name).sync_policy.prune:
                    for orphan in result.orphans:
                        print(f"# {orphan.resource_id} is orphaned (prune disabled)")

        if output == "yaml":
            YamlFormatter().print(summaries)
        elif output == "json":
            JsonFormatter().print(summaries)
