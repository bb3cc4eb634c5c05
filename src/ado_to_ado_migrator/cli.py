"""
Command-line interface for the Azure DevOps to Azure DevOps migration tool.
"""

from __future__ import annotations

import argparse
import logging
import sys

from .ado_client import AzureDevOpsClient, get_token
from .ado_stores import AzureDevOpsPipelineStore, AzureDevOpsWorkItemStore
from .models import DEFAULT_REFLECTED_FIELD, MigrationContext
from .orchestrator import LinkMigrator, PipelineMigrationOptions, PipelineMigrator
from .relationships import ReplicatorOptions
from .utils import parse_name_maps, setup_logging, split_names

logger: logging.Logger = logging.getLogger(__name__)


def _common_arguments() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(add_help=False)

    _ = parser.add_argument("--source-url", required=True, help="Source organisation or collection URL")
    _ = parser.add_argument("--source-project", required=True, help="Source project name")
    _ = parser.add_argument("--target-url", required=True, help="Target organisation or collection URL")
    _ = parser.add_argument("--target-project", required=True, help="Target project name")

    _ = parser.add_argument(
        "--source-pass-token", help="Path for source token in pass utility (default: env ADO_SOURCE_TOKEN)"
    )
    _ = parser.add_argument(
        "--target-pass-token", help="Path for target token in pass utility (default: env ADO_TARGET_TOKEN)"
    )

    _ = parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    _ = parser.add_argument("--log-file", default="migration.log", help="Log file to append to (default: migration.log)")
    return parser


def parse_arguments(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Migrate work item links and pipelines between Azure DevOps projects"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    common = _common_arguments()

    links = subparsers.add_parser(
        "links", parents=[common], help="Replicate links of already migrated work items onto their targets"
    )
    _ = links.add_argument("--query", help="WIQL query selecting the source work items (default: all)")
    _ = links.add_argument(
        "--reflected-field",
        default=DEFAULT_REFLECTED_FIELD,
        help=f"Target field holding the source identity (default: {DEFAULT_REFLECTED_FIELD})",
    )
    _ = links.add_argument(
        "--allow-cross-project-links",
        action="store_true",
        help="Resolve link targets in any project of the target organisation",
    )
    _ = links.add_argument(
        "--skip-when-counts-match",
        action="store_true",
        help="Skip work items whose target already has as many links as the source",
    )
    links.set_defaults(handler=run_links)

    pipelines = subparsers.add_parser(
        "pipelines", parents=[common], help="Migrate service connections, groups, pools and pipelines"
    )
    for phase in ("service-connections", "variable-groups", "task-groups", "agent-pools"):
        _ = pipelines.add_argument(f"--no-{phase}", action="store_true", help=f"Don't migrate {phase.replace('-', ' ')}")
    _ = pipelines.add_argument("--no-build-pipelines", action="store_true", help="Don't migrate build pipelines")
    _ = pipelines.add_argument("--no-release-pipelines", action="store_true", help="Don't migrate release pipelines")
    _ = pipelines.add_argument(
        "--build-pipeline", action="append", help="Build pipeline to migrate (default: all). Can be repeated."
    )
    _ = pipelines.add_argument(
        "--release-pipeline", action="append", help="Release pipeline to migrate (default: all). Can be repeated."
    )
    _ = pipelines.add_argument(
        "--queue-build-pipeline",
        action="append",
        help="Build pipeline whose succeeded builds are queued in the target. Can be repeated.",
    )
    _ = pipelines.add_argument(
        "--repository-name-map",
        action="append",
        help='Repository rename (format: "source_name=target_name"). Can be specified multiple times.',
    )
    pipelines.set_defaults(handler=run_pipelines)

    return parser.parse_args(argv)


def _context(args: argparse.Namespace) -> MigrationContext:
    return MigrationContext(
        source_collection_url=args.source_url,
        source_project=args.source_project,
        target_collection_url=args.target_url,
        target_project=args.target_project,
        reflected_field=getattr(args, "reflected_field", DEFAULT_REFLECTED_FIELD),
        allow_cross_project_links=getattr(args, "allow_cross_project_links", False),
    )


def _clients(args: argparse.Namespace) -> tuple[AzureDevOpsClient, AzureDevOpsClient]:
    source = AzureDevOpsClient(args.source_url, args.source_project, get_token("source", args.source_pass_token))
    target = AzureDevOpsClient(args.target_url, args.target_project, get_token("target", args.target_pass_token))
    return source, target


def print_report(title: str, statistics: dict[str, int], errors: list[str]) -> None:
    print(f"\n{title}")  # noqa: T201
    for key, value in statistics.items():
        print(f"  {key.replace('_', ' ')}: {value}")  # noqa: T201
    for error in errors:
        print(f"  ERROR: {error}")  # noqa: T201


def run_links(args: argparse.Namespace) -> bool:
    """Run the work item link pass; return whether it succeeded."""
    context = _context(args)
    source_client, target_client = _clients(args)
    migrator = LinkMigrator(
        AzureDevOpsWorkItemStore(source_client, reflected_field=context.reflected_field),
        AzureDevOpsWorkItemStore(target_client, reflected_field=context.reflected_field),
        context,
        ReplicatorOptions(skip_when_counts_match=args.skip_when_counts_match),
    )
    result = migrator.migrate(args.query)
    print_report("Link migration", result.statistics(), result.errors)
    return result.success


def run_pipelines(args: argparse.Namespace) -> bool:
    """Run the pipeline phases; return whether every phase completed."""
    options = PipelineMigrationOptions(
        migrate_service_connections=not args.no_service_connections,
        migrate_variable_groups=not args.no_variable_groups,
        migrate_task_groups=not args.no_task_groups,
        migrate_agent_pools=not args.no_agent_pools,
        migrate_build_pipelines=not args.no_build_pipelines,
        migrate_release_pipelines=not args.no_release_pipelines,
        build_pipelines=split_names(args.build_pipeline),
        release_pipelines=split_names(args.release_pipeline),
        queue_build_pipelines=split_names(args.queue_build_pipeline),
        repository_name_maps=parse_name_maps(args.repository_name_map),
    )
    source_client, target_client = _clients(args)
    migrator = PipelineMigrator(
        AzureDevOpsPipelineStore(source_client), AzureDevOpsPipelineStore(target_client), _context(args), options
    )
    result = migrator.migrate()

    errors = list(result.errors)
    for report in result.phases.values():
        errors.extend(f"{report.phase}: {failure}" for failure in report.failures)
    print_report("Pipeline migration", result.statistics(), errors)
    return result.success


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = parse_arguments(argv)

    # Setup logging
    setup_logging(verbose=args.verbose, log_file=args.log_file)

    try:
        success: bool = args.handler(args)
    except Exception:
        logger.exception("Migration failed")
        sys.exit(1)

    sys.exit(0 if success else 1)
