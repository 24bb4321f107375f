"""Fleet-sync run action."""

from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import logging
from typing import cast

from fleet_sync.config import ReconcilerConfig

from .common import add_config_flags, open_fleet

_LOGGER = logging.getLogger(__name__)


class RunAction:
    """Run the reconciliation loop in the foreground."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "run",
                help="Continuously reconcile the fleet",
                description="""Periodically sync every application according to its
                    sync policy until interrupted.""",
            ),
        )
        add_config_flags(args)
        args.add_argument(
            "--interval",
            type=float,
            default=ReconcilerConfig.interval,
            help="Seconds between reconciliation ticks",
        )
        args.add_argument(
            "--max-concurrency",
            type=int,
            default=ReconcilerConfig.max_concurrency,
            help="Number of applications synced at the same time",
        )
        args.add_argument(
            "--max-ticks",
            type=int,
            default=None,
            help="Stop after this many ticks (default: run forever)",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        interval: float,
        max_concurrency: int,
        max_ticks: int | None,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        config = ReconcilerConfig(interval=interval, max_concurrency=max_concurrency)
        async with open_fleet(
            kwargs["config"],
            kwargs["kubectl"],
            kwargs["cache_dir"],
            reconciler_config=config,
        ) as fleet:
            _LOGGER.info(
                "Reconciling %d applications every %ss", len(fleet.registry), interval
            )
            await fleet.reconciler.run(max_ticks=max_ticks)
            for state in fleet.store.list_states():
                print(f"{state.application}: {state}")
