# src/flowline/core/ledger/flows.py
"""FlowStore: durable registry of published flow graph versions.

Published versions are immutable. Publishing validates first, so a graph
that fails structural validation never gets a version number. Existing
executions keep the version they enrolled on.
"""

import json
import threading
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import Row, and_, func, select, update
from sqlalchemy.exc import IntegrityError

from flowline.contracts.errors import FlowNotFound
from flowline.core.canonical import CANONICAL_VERSION, canonical_json
from flowline.core.definition import FlowDefinition, build_graph
from flowline.core.graph import FlowGraph
from flowline.core.ledger.database import LedgerDB
from flowline.core.ledger.schema import flows_table
from flowline.core.logging import get_logger

logger = get_logger(__name__)

# Concurrent publishers of the same flow race on the (flow_id, version) key
PUBLISH_RETRY_LIMIT = 3


class FlowStore:
    """Published flow versions, with an in-process cache of built graphs."""

    def __init__(self, db: LedgerDB) -> None:
        self._db = db
        self._cache: dict[tuple[str, int], FlowGraph] = {}
        self._lock = threading.Lock()

    def publish(self, definition: FlowDefinition, now: datetime | None = None) -> FlowGraph:
        """Validate and store a new version of a flow.

        Publishing content identical to the latest live version returns
        that version instead of creating a new one.

        Returns:
            The validated graph carrying its assigned version

        Raises:
            GraphError: If the definition fails structural validation
        """
        now = now or datetime.now(UTC)
        # Validate before touching the database
        candidate = build_graph(definition)

        for _ in range(PUBLISH_RETRY_LIMIT):
            latest = self._latest_row(definition.flow_id)
            if (
                latest is not None
                and latest.archived_at is None
                and latest.definition_hash == candidate.content_hash
            ):
                logger.info(
                    "Flow unchanged, keeping published version",
                    flow_id=definition.flow_id,
                    version=latest.version,
                )
                return self.get(definition.flow_id, latest.version)

            version = 1 if latest is None else latest.version + 1
            graph = build_graph(definition, version=version)
            try:
                with self._db.connection() as conn:
                    conn.execute(
                        flows_table.insert().values(
                            flow_id=graph.flow_id,
                            version=version,
                            name=graph.name,
                            definition_json=canonical_json(graph.to_dict()),
                            definition_hash=graph.content_hash,
                            canonical_version=CANONICAL_VERSION,
                            published_at=now,
                            archived_at=None,
                        )
                    )
            except IntegrityError:
                logger.debug(
                    "Version taken by a concurrent publish, retrying",
                    flow_id=graph.flow_id,
                    version=version,
                )
                continue

            with self._lock:
                self._cache[(graph.flow_id, version)] = graph
            logger.info(
                "Flow published",
                flow_id=graph.flow_id,
                version=version,
                definition_hash=graph.content_hash,
            )
            return graph

        raise RuntimeError(
            f"Could not assign a version to flow '{definition.flow_id}' "
            f"after {PUBLISH_RETRY_LIMIT} attempts"
        )

    def _latest_row(self, flow_id: str) -> Row[Any] | None:
        with self._db.connection() as conn:
            return conn.execute(
                select(flows_table)
                .where(flows_table.c.flow_id == flow_id)
                .order_by(flows_table.c.version.desc())
                .limit(1)
            ).first()

    def get(self, flow_id: str, version: int) -> FlowGraph:
        """Get a published version (archived versions included).

        Raises:
            FlowNotFound: No such flow version
        """
        key = (flow_id, version)
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None:
            return cached

        with self._db.connection() as conn:
            row = conn.execute(
                select(flows_table.c.definition_json).where(
                    and_(flows_table.c.flow_id == flow_id, flows_table.c.version == version)
                )
            ).first()
        if row is None:
            raise FlowNotFound(flow_id, version)

        definition = FlowDefinition.model_validate(json.loads(row.definition_json))
        graph = build_graph(definition, version=version)
        with self._lock:
            self._cache[key] = graph
        return graph

    def latest(self, flow_id: str) -> FlowGraph:
        """Highest published version of a flow.

        Raises:
            FlowNotFound: Flow was never published
        """
        row = self._latest_row(flow_id)
        if row is None:
            raise FlowNotFound(flow_id)
        return self.get(flow_id, row.version)

    def is_archived(self, flow_id: str) -> bool:
        row = self._latest_row(flow_id)
        if row is None:
            raise FlowNotFound(flow_id)
        return row.archived_at is not None

    def versions(self, flow_id: str) -> list[int]:
        with self._db.connection() as conn:
            return [
                row.version
                for row in conn.execute(
                    select(flows_table.c.version)
                    .where(flows_table.c.flow_id == flow_id)
                    .order_by(flows_table.c.version)
                )
            ]

    def active_flows(self) -> list[FlowGraph]:
        """Latest version of every flow that is not archived, by flow_id."""
        latest_versions = (
            select(
                flows_table.c.flow_id,
                func.max(flows_table.c.version).label("version"),
            )
            .group_by(flows_table.c.flow_id)
            .subquery()
        )
        query = (
            select(flows_table.c.flow_id, flows_table.c.version)
            .join(
                latest_versions,
                and_(
                    flows_table.c.flow_id == latest_versions.c.flow_id,
                    flows_table.c.version == latest_versions.c.version,
                ),
            )
            .where(flows_table.c.archived_at.is_(None))
            .order_by(flows_table.c.flow_id)
        )
        with self._db.connection() as conn:
            rows = conn.execute(query).fetchall()
        return [self.get(row.flow_id, row.version) for row in rows]

    def archive(self, flow_id: str, now: datetime | None = None) -> int:
        """Stop new enrollments into every version of a flow.

        Returns:
            Number of versions newly archived

        Raises:
            FlowNotFound: Flow was never published
        """
        now = now or datetime.now(UTC)
        with self._db.connection() as conn:
            result = conn.execute(
                update(flows_table)
                .where(
                    and_(
                        flows_table.c.flow_id == flow_id,
                        flows_table.c.archived_at.is_(None),
                    )
                )
                .values(archived_at=now)
            )
            archived = result.rowcount
        if archived == 0 and not self.versions(flow_id):
            raise FlowNotFound(flow_id)
        logger.info("Flow archived", flow_id=flow_id, versions=archived)
        return archived
