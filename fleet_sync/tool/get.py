"""Fleet-sync get action."""

import logging
from argparse import (
    ArgumentParser,
    _SubParsersAction as SubParsersAction,
)
from typing import cast, Any

from fleet_sync.store import SyncState

from .common import add_config_flags, open_fleet
from .format import PrintFormatter, YamlFormatter, JsonFormatter

_LOGGER = logging.getLogger(__name__)


def _revision(state: SyncState) -> str:
    return state.revision[:12] if state.revision else ""


class GetApplicationAction:
    """Get details about applications."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "applications",
                aliases=["app", "apps", "application"],
                help="Get Application objects",
                description="Print the applications in the fleet and their sync status",
            ),
        )
        add_config_flags(args)
        args.add_argument(
            "--output",
            "-o",
            choices=["table", "wide", "yaml", "json"],
            default="table",
            help="Output format of the command",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        output: str,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        async with open_fleet(
            kwargs["config"], kwargs["kubectl"], kwargs["cache_dir"]
        ) as fleet:
            apps = fleet.registry.list()
            if output in ("yaml", "json"):
                objs = [app.to_dict() for app in apps]
                formatter = YamlFormatter() if output == "yaml" else JsonFormatter()
                formatter.print(objs)
                return

            cols = ["name", "cluster", "namespace", "status", "revision"]
            if output == "wide":
                cols.extend(["repo", "path", "target", "policy"])
            results: list[dict[str, Any]] = []
            for app in apps:
                state = fleet.reconciler.status(app.name)
                policy = [
                    flag
                    for flag, enabled in (
                        ("automated", app.sync_policy.automated),
                        ("prune", app.sync_policy.prune),
                        ("self-heal", app.sync_policy.self_heal),
                    )
                    if enabled
                ]
                results.append(
                    {
                        "name": app.name,
                        "cluster": app.destination.cluster,
                        "namespace": app.destination.namespace,
                        "status": str(state),
                        "revision": _revision(state),
                        "repo": app.source.repo_url,
                        "path": app.source.path,
                        "target": app.source.revision,
                        "policy": ",".join(policy) or "manual",
                    }
                )

        if not results:
            print("no Application objects found in fleet configuration")
            return
        PrintFormatter(cols).print(results)


class GetClusterAction:
    """Get details about clusters."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "clusters",
                aliases=["cl", "cluster"],
                help="Get Cluster objects",
                description="Print the clusters in the fleet",
            ),
        )
        add_config_flags(args)
        args.add_argument(
            "--probe",
            action="store_true",
            help="Check connectivity to each cluster before printing its health",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        probe: bool,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        async with open_fleet(
            kwargs["config"], kwargs["kubectl"], kwargs["cache_dir"]
        ) as fleet:
            results: list[dict[str, Any]] = []
            for target in fleet.clusters.targets():
                if probe:
                    await fleet.clusters.probe(target.name)
                results.append(
                    {
                        "name": target.name,
                        "driver": target.driver,
                        "context": target.context,
                        "server": target.server,
                        "health": str(target.health),
                        "applications": len(
                            fleet.registry.applications_for_cluster(target.name)
                        ),
                    }
                )

        if not results:
            print("no Cluster objects found in fleet configuration")
            return
        PrintFormatter().print(results)


class GetAction:
    """Get details about objects in the fleet."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args: ArgumentParser = subparsers.add_parser(
            "get",
            help="Print information about objects in the fleet",
            description="Print information about clusters and applications.",
        )
        subcmds = args.add_subparsers(
            title="Available commands",
            required=True,
        )
        GetApplicationAction.register(subcmds)
        GetClusterAction.register(subcmds)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        # No-op given subcommands are always the dispatch target
