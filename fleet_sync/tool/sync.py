"""Fleet-sync sync action."""

from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import asyncio
import logging
from typing import cast, Any

from fleet_sync.context import get_trace_collector
from fleet_sync.exceptions import FleetException
from fleet_sync.store import ResourceResult, SyncStatus

from .common import add_config_flags, open_fleet
from .format import PrintFormatter

_LOGGER = logging.getLogger(__name__)


class SyncAction:
    """Fleet-sync sync action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "sync",
                help="Sync applications to their clusters once",
                description="Run a single sync cycle for each selected application.",
            ),
        )
        add_config_flags(args)
        args.add_argument(
            "--app",
            "-a",
            action="append",
            dest="apps",
            help="Application to sync, may be repeated (default: all applications)",
        )
        args.add_argument(
            "--trace",
            action="store_true",
            help="Print the time spent in each phase of the sync",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        apps: list[str] | None,
        trace: bool,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        with get_trace_collector() as collector:
            async with open_fleet(
                kwargs["config"], kwargs["kubectl"], kwargs["cache_dir"]
            ) as fleet:
                names = apps or [app.name for app in fleet.registry.list()]
                for name in names:
                    if name not in fleet.registry:
                        raise FleetException(f"Application '{name}' not found in fleet")
                states = await asyncio.gather(
                    *(fleet.reconciler.trigger(name) for name in names)
                )

        results: list[dict[str, Any]] = []
        for state in states:
            counts = {result: 0 for result in ResourceResult}
            for resource in state.resources:
                counts[resource.result] += 1
            results.append(
                {
                    "name": state.application,
                    "status": str(state),
                    "revision": state.revision[:12] if state.revision else "",
                    "applied": counts[ResourceResult.APPLIED],
                    "pruned": counts[ResourceResult.PRUNED],
                    "unchanged": counts[ResourceResult.UNCHANGED],
                    "failed": counts[ResourceResult.FAILED],
                    "orphans": len(state.orphans),
                }
            )
        PrintFormatter().print(results)
        for state in states:
            for resource in state.failed:
                print(
                    f"{state.application}: {resource}: "
                    f"{resource.reason}: {resource.message}"
                )

        if trace:
            print()
            PrintFormatter().print(collector.summary())

        degraded = [s.application for s in states if s.status == SyncStatus.DEGRADED]
        if degraded:
            raise FleetException(f"Applications failed to sync: {', '.join(degraded)}")
