from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mcp.server.fastmcp import FastMCP

from loyalty import services
from loyalty.db import current_db_path, init_db, session_scope
from loyalty.errors import MaintenanceBusy, OperationFailed, ValidationError
from loyalty.gateway import SqlEntityStore

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def loyalty_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "Loyalty",
    instructions=(
        "Loyalty keeps group ratings linked to the objects they rate. "
        "Start with diagnose_ratings() to see how many ratings are orphaned or still point "
        "at legacy placeholder members. preview_migration() shows what migrate_objects() "
        "would convert; fix_ratings() re-targets ratings by name. group_scores() returns "
        "the aggregated score per object and metric."
    ),
    lifespan=loyalty_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("loyalty://overview")
def loyalty_overview() -> str:
    """Overview of the Loyalty data model and the maintenance workflow."""
    return json.dumps({
        "system": "Loyalty - group rating aggregation and integrity maintenance",
        "database": str(current_db_path()),
        "data_model": {
            "object": "A ratable thing in a group (text, link or claimable user profile).",
            "placeholder": "Legacy member with status 'placeholder'; predates objects and is only kept for migration.",
            "rating": "One rater's numeric value for one metric against one target identity.",
            "aggregated_score": "Mean and count of ratings per (object, metric); recomputed on every read.",
        },
        "workflow": [
            "1. diagnose_ratings(group_id?) - counts of valid, orphaned and placeholder-bound ratings.",
            "2. preview_migration() - placeholders that would become objects, by group.",
            "3. migrate_objects() - run ONCE per placeholder cohort; re-running duplicates objects.",
            "4. fix_ratings() - match remaining ratings to objects by normalized placeholder name.",
            "5. diagnose_ratings() again to confirm.",
        ],
        "rating_modes": {
            "group": "Average of all ratings.",
            "captain": "Only the captain's rating counts.",
        },
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Maintenance
# ---------------------------------------------------------------------------


@mcp.tool()
def diagnose_ratings(group_id: str | None = None) -> dict:
    """Classify ratings as valid, orphaned, or still pointing at placeholder members.

    Args:
        group_id: Optional group to limit the report to.
    """
    with session_scope() as session:
        return services.diagnose(SqlEntityStore(session), group_id)


@mcp.tool()
def preview_migration() -> dict:
    """Show, per group, the placeholder members a migration would convert into objects."""
    with session_scope() as session:
        return services.migration_preview(SqlEntityStore(session))


@mcp.tool()
def migrate_objects() -> dict:
    """Convert every placeholder member into a new object and re-point its ratings.

    Not idempotent: only run once per placeholder cohort.
    """
    with session_scope() as session:
        try:
            return services.run_migration(SqlEntityStore(session))
        except OperationFailed as exc:
            return services.failure_payload(exc)
        except MaintenanceBusy as exc:
            return {"error": "Maintenance in progress", "details": str(exc)}


@mcp.tool()
def fix_ratings() -> dict:
    """Re-target ratings whose placeholder name matches an object in the same group."""
    with session_scope() as session:
        try:
            return services.run_repair(SqlEntityStore(session))
        except OperationFailed as exc:
            return services.failure_payload(exc)
        except MaintenanceBusy as exc:
            return {"error": "Maintenance in progress", "details": str(exc)}


# ---------------------------------------------------------------------------
# Tools: Scores
# ---------------------------------------------------------------------------


@mcp.tool()
def group_scores(group_id: str, captain_id: str) -> list[dict] | dict:
    """Aggregated score (mean and count) per object and metric for a group.

    Args:
        group_id: The group to aggregate.
        captain_id: Identity of the group captain; decides captain-only objects.
    """
    with session_scope() as session:
        try:
            return services.group_scores(SqlEntityStore(session), group_id, captain_id)
        except ValidationError as exc:
            return {"error": "Invalid request", "details": str(exc)}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Loyalty MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
