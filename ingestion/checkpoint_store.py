"""
Durable storage of sync runs, their counters and checkpoints.

Every method opens its own short transaction through the session factory so
that the owning executor, the cancellation controller and zombie sweeps never
hold a row open across a chunk. Status changes are compare-and-set updates
guarded by the set of statuses they may leave from.
"""

from typing import Any, Dict, Iterable, List, Optional
from datetime import datetime
import logging
import uuid

from sqlalchemy import select, update, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.exceptions import AlreadyRunningError, CheckpointError, RunNotFoundError, RunNotResumableError
from models.base import ACTIVE_STATUSES, TERMINAL_STATUSES, RunStatus, SyncSource, utcnow
from models.sync_run import SyncRun
from models.system_setting import SystemSetting
from schemas.checkpoint import CheckpointBase, parse_checkpoint

logger = logging.getLogger(__name__)


class CheckpointStore:
    """
    Data access for SyncRun rows.

    Responsibilities:
    - Atomic run creation honouring one active run per source
    - Counter and checkpoint writes with monotonic progress
    - Guarded status transitions for single runs and sweeps
    - Operator settings (global pause)
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, run_id: uuid.UUID) -> Optional[SyncRun]:
        async with self.session_factory() as session:
            return await session.get(SyncRun, run_id)

    async def read_status(self, run_id: uuid.UUID) -> Optional[RunStatus]:
        """Current status straight from the row, bypassing any identity map."""
        async with self.session_factory() as session:
            return await session.scalar(select(SyncRun.status).where(SyncRun.id == run_id))

    async def active_run(self, source: SyncSource) -> Optional[SyncRun]:
        async with self.session_factory() as session:
            return await self._active_run(session, source)

    async def list_runs(
        self,
        source: Optional[SyncSource] = None,
        statuses: Optional[Iterable[RunStatus]] = None,
        limit: int = 50
    ) -> List[SyncRun]:
        query = select(SyncRun)
        if source is not None:
            query = query.where(SyncRun.source == source)
        if statuses is not None:
            query = query.where(SyncRun.status.in_(list(statuses)))
        query = query.order_by(SyncRun.started_at.desc()).limit(limit)

        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Run creation
    # ------------------------------------------------------------------

    async def create_run(
        self,
        source: SyncSource,
        dry_run: bool = False,
        options: Optional[Dict[str, Any]] = None,
        checkpoint: Optional[CheckpointBase] = None,
        supersedes: Optional[uuid.UUID] = None
    ) -> SyncRun:
        """
        Insert a run in ``running`` status.

        The active-run check and the insert share one transaction; the partial
        unique index catches the race the check cannot see. When ``supersedes``
        is given, the old run is marked superseded in the same transaction.

        Raises:
            AlreadyRunningError: Another run of this source is running/continuing
            RunNotResumableError: The superseded run was already resumed
        """
        now = utcnow()
        run = SyncRun(
            id=uuid.uuid4(),
            source=source,
            status=RunStatus.RUNNING,
            dry_run=dry_run,
            options=options or {},
            checkpoint=checkpoint.to_blob() if checkpoint is not None else None,
            resumed_from_id=supersedes,
            started_at=now,
            last_activity_at=now,
            total_fetched=0,
            total_inserted=0,
            total_updated=0,
        )

        async with self.session_factory() as session:
            try:
                existing = await self._active_run(session, source)
                if existing is not None:
                    raise AlreadyRunningError(source.value, existing.id)

                session.add(run)
                await session.flush()

                if supersedes is not None:
                    result = await session.execute(
                        update(SyncRun).execution_options(synchronize_session=False)
                        .where(SyncRun.id == supersedes, SyncRun.superseded_by_id.is_(None))
                        .values(superseded_by_id=run.id)
                    )
                    if result.rowcount != 1:
                        raise RunNotResumableError(
                            "Run has already been resumed",
                            context={"run_id": str(supersedes)}
                        )

                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise AlreadyRunningError(source.value, context={"constraint": "uq_sync_run_active_source"}) from e
            except Exception:
                await session.rollback()
                raise

        logger.info(f"Created sync run {run.id} for {source.value} (dry_run={dry_run})")
        return run

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    async def write_progress(
        self,
        run_id: uuid.UUID,
        checkpoint: CheckpointBase,
        fetched: int = 0,
        inserted: int = 0,
        updated: int = 0,
        error_message: Optional[str] = None
    ) -> RunStatus:
        """
        Add counter deltas, overwrite the checkpoint and touch last activity.

        Counters are written whatever the status is, so a chunk that was in
        flight when a cancel landed still has its work accounted for. Only a
        run still running/continuing is moved to ``continuing``. A superseded
        run is left untouched; its work belongs to the run that resumed it.

        Returns:
            The run status after the write

        Raises:
            RunNotFoundError: Unknown run id
            CheckpointError: The new checkpoint reports less progress
        """
        now = utcnow()
        async with self.session_factory() as session:
            async with session.begin():
                row = (await session.execute(
                    select(SyncRun.id, SyncRun.status, SyncRun.checkpoint, SyncRun.superseded_by_id)
                    .where(SyncRun.id == run_id)
                )).one_or_none()
                if row is None:
                    raise RunNotFoundError("Sync run not found", context={"run_id": str(run_id)})
                if row.superseded_by_id is not None:
                    logger.warning(
                        f"Sync run {run_id} was superseded by {row.superseded_by_id}; progress not recorded"
                    )
                    return row.status

                previous = parse_checkpoint(row.checkpoint)
                if previous is not None and checkpoint.running_total < previous.running_total:
                    raise CheckpointError(
                        "Checkpoint progress must not decrease",
                        context={
                            "run_id": str(run_id),
                            "operation": "advance",
                            "previous_total": previous.running_total,
                            "new_total": checkpoint.running_total,
                        }
                    )

                values: Dict[str, Any] = {
                    "total_fetched": SyncRun.total_fetched + fetched,
                    "total_inserted": SyncRun.total_inserted + inserted,
                    "total_updated": SyncRun.total_updated + updated,
                    "checkpoint": checkpoint.model_copy(update={"last_activity_at": now}).to_blob(),
                    "last_activity_at": now,
                }
                if error_message is not None:
                    values["error_message"] = error_message

                await session.execute(update(SyncRun).execution_options(synchronize_session=False).where(SyncRun.id == run_id).values(**values))
                await session.execute(
                    update(SyncRun).execution_options(synchronize_session=False)
                    .where(SyncRun.id == run_id, SyncRun.status.in_(list(ACTIVE_STATUSES)))
                    .values(status=RunStatus.CONTINUING)
                )
                return await session.scalar(select(SyncRun.status).where(SyncRun.id == run_id))

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    async def compare_and_set_status(
        self,
        run_id: uuid.UUID,
        to_status: RunStatus,
        from_statuses: Iterable[RunStatus],
        **values: Any
    ) -> bool:
        """Set the status only if the row is currently in one of ``from_statuses``."""
        async with self.session_factory() as session:
            result = await session.execute(
                update(SyncRun).execution_options(synchronize_session=False)
                .where(
                    SyncRun.id == run_id,
                    SyncRun.status.in_(list(from_statuses)),
                    SyncRun.superseded_by_id.is_(None)
                )
                .values(status=to_status, **values)
            )
            await session.commit()
            return result.rowcount == 1

    async def bulk_set_status(
        self,
        to_status: RunStatus,
        from_statuses: Iterable[RunStatus],
        source: Optional[SyncSource] = None,
        inactive_since: Optional[datetime] = None,
        **values: Any
    ) -> List[uuid.UUID]:
        """
        Move every matching run to ``to_status``.

        Returns:
            Ids of the runs that were actually changed
        """
        from_statuses = list(from_statuses)
        conditions = [SyncRun.status.in_(from_statuses), SyncRun.superseded_by_id.is_(None)]
        if source is not None:
            conditions.append(SyncRun.source == source)
        if inactive_since is not None:
            conditions.append(SyncRun.last_activity_at < inactive_since)

        async with self.session_factory() as session:
            async with session.begin():
                candidates = list((await session.scalars(select(SyncRun.id).where(*conditions))).all())
                if not candidates:
                    return []

                await session.execute(
                    update(SyncRun).execution_options(synchronize_session=False)
                    .where(SyncRun.id.in_(candidates), *conditions)
                    .values(status=to_status, **values)
                )
                changed = await session.scalars(
                    select(SyncRun.id).where(SyncRun.id.in_(candidates), SyncRun.status == to_status)
                )
                return list(changed.all())

    async def write_checkpoint(self, run_id: uuid.UUID, checkpoint: CheckpointBase) -> None:
        """Overwrite the checkpoint without touching counters or status."""
        async with self.session_factory() as session:
            await session.execute(
                update(SyncRun).execution_options(synchronize_session=False)
                .where(SyncRun.id == run_id, SyncRun.superseded_by_id.is_(None))
                .values(checkpoint=checkpoint.to_blob())
            )
            await session.commit()

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    async def delete_terminal_before(self, cutoff: datetime) -> int:
        """Delete finished runs started before ``cutoff``."""
        async with self.session_factory() as session:
            result = await session.execute(
                delete(SyncRun).execution_options(synchronize_session=False).where(
                    SyncRun.status.in_(list(TERMINAL_STATUSES)),
                    SyncRun.started_at < cutoff
                )
            )
            await session.commit()
            return result.rowcount

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    async def get_setting(self, key: str) -> Optional[str]:
        async with self.session_factory() as session:
            return await session.scalar(select(SystemSetting.value).where(SystemSetting.key == key))

    async def put_setting(self, key: str, value: str) -> None:
        async with self.session_factory() as session:
            setting = await session.get(SystemSetting, key)
            if setting is None:
                session.add(SystemSetting(key=key, value=value))
            else:
                setting.value = value
            await session.commit()

    @staticmethod
    async def _active_run(session: AsyncSession, source: SyncSource) -> Optional[SyncRun]:
        result = await session.execute(
            select(SyncRun)
            .where(SyncRun.source == source, SyncRun.status.in_(list(ACTIVE_STATUSES)))
            .limit(1)
        )
        return result.scalar_one_or_none()
