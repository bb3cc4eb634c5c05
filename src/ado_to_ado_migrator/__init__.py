"""
Azure DevOps to Azure DevOps Migration Tool

Replicates work item links onto already migrated work items and migrates
pipeline definitions (with the service connections, variable groups, task
groups and agent pools they reference) between Azure DevOps projects, without
duplicating what earlier runs migrated.
"""

from __future__ import annotations

from .cli import main
from .exceptions import MigrationError
from .identity import IdentityResolver, ReflectedIdentity
from .models import MigrationContext
from .orchestrator import LinkMigrator, PipelineMigrationOptions, PipelineMigrator
from .relationships import RelationshipReplicator, ReplicatorOptions
from .utils import setup_logging

# Package version
__version__ = "0.1.0"

__all__ = [
    "IdentityResolver",
    "LinkMigrator",
    "MigrationContext",
    "MigrationError",
    "PipelineMigrationOptions",
    "PipelineMigrator",
    "ReflectedIdentity",
    "RelationshipReplicator",
    "ReplicatorOptions",
    "main",
    "setup_logging",
]
