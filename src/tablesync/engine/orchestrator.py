"""
SyncOrchestrator: runs one sync of one configuration.

Phases, always in this order:

  1. FETCHING                read schema + both tables, convert to canonical rows
  2. DETECTING_CONFLICTS     bucket every row against the checkpoint
  3. RESOLVING_CONFLICTS     apply the conflict policy (bidirectional only)
  4. WRITING_LEFT_TO_RIGHT   dropdown validation, then creates / updates / deletes
                             on the spreadsheet
  5. WRITING_RIGHT_TO_LEFT   creates / updates / deletes on the left, then
                             rewrite sheet rows with new ids and normalised values
  6. UPDATING_CHECKPOINT     build the checkpoint the caller should persist

Every phase records its own duration, errors and warnings. An exception inside
a phase is classified and recorded, never raised: run() always returns a
RunReport. A failed fetch or detection stops the run, since there is nothing
sound to write. Write phases only record per-row outcomes; a row whose write
failed keeps its previous checkpoint entry so the next run tries it again.

Writes are split into chunks of the client's max_batch_size and dispatched
concurrently; the endpoint's RateLimiter spaces them and the RetryExecutor
retries each chunk. A chunk rejected with a non-retryable error is re-sent
one row at a time so a single bad row cannot fail its neighbours.

In one-way mode the source table is authoritative: its adds, updates and
deletions are copied over, destination rows that drifted from the checkpoint
are overwritten or restored, and rows that exist only on the destination are
left alone.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple

from tablesync.engine.checkpoint import Checkpoint, RowState
from tablesync.engine.choice_fields import to_validation_rule
from tablesync.engine.configuration import SyncConfiguration, SyncDirection
from tablesync.engine.conflict_detector import (
    ConflictRecord,
    ConflictType,
    DetectionResult,
    detect,
)
from tablesync.engine.conflict_resolver import (
    ACTION_DELETE,
    LEFT,
    resolve_all,
)
from tablesync.engine.contracts import EndpointClient, RowSelector, Schema, ValidatingClient
from tablesync.engine.cross_reference import CrossReferenceResolver, normalize_label
from tablesync.engine.field_mapper import FieldMapper, display_text
from tablesync.engine.rate_limiter import RateLimiter
from tablesync.engine.report import (
    PHASE_ORDER,
    Phase,
    PhaseResult,
    PhaseStatus,
    RunReport,
    RunStatus,
    SyncErrorEntry,
)
from tablesync.engine.retry import RetryExecutor
from tablesync.engine.values import Row, content_hash
from tablesync.errors import (
    ConflictError,
    ErrorKind,
    OperationFailed,
    attempts_of,
    classify_error,
    is_retryable,
    root_message,
)

logger = logging.getLogger(__name__)

DEFAULT_LEFT_REQUESTS_PER_SECOND = 5.0
DEFAULT_RIGHT_REQUESTS_PER_SECOND = 1.0

PHASE_DEFAULT_KIND = {
    Phase.FETCHING: ErrorKind.FETCH,
    Phase.DETECTING_CONFLICTS: ErrorKind.STATE,
    Phase.RESOLVING_CONFLICTS: ErrorKind.CONFLICT,
    Phase.WRITING_LEFT_TO_RIGHT: ErrorKind.WRITE,
    Phase.WRITING_RIGHT_TO_LEFT: ErrorKind.WRITE,
    Phase.UPDATING_CHECKPOINT: ErrorKind.STATE,
}


def chunk_list(items: Sequence[Any], size: int) -> List[List[Any]]:
    size = max(1, size)
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


# ─── Run bookkeeping ──────────────────────────────────────────────────────────

@dataclass
class _Op:
    key: str
    row: Optional[Row] = None
    ref: Optional[str] = None
    conflict: bool = False


@dataclass
class _Plan:
    right_create: List[_Op] = field(default_factory=list)
    right_update: List[_Op] = field(default_factory=list)
    right_delete: List[_Op] = field(default_factory=list)
    left_create: List[_Op] = field(default_factory=list)
    left_update: List[_Op] = field(default_factory=list)
    left_delete: List[_Op] = field(default_factory=list)
    link_only: List[_Op] = field(default_factory=list)

    @property
    def to_right(self) -> int:
        return len(self.right_create) + len(self.right_update) + len(self.right_delete)

    @property
    def to_left(self) -> int:
        return len(self.left_create) + len(self.left_update) + len(self.left_delete)


@dataclass
class _Outcome:
    left_hash: Optional[str]
    right_hash: Optional[str]
    left_modified: Optional[datetime] = None
    right_modified: Optional[datetime] = None
    failed: bool = False
    replaces: Optional[str] = None


@dataclass
class _ItemResult:
    op: _Op
    returned: Optional[Row] = None
    error: Optional[BaseException] = None


@dataclass
class _Run:
    config: SyncConfiguration
    checkpoint: Optional[Checkpoint]
    report: RunReport
    previous: Dict[str, RowState] = field(default_factory=dict)
    schema: Optional[Schema] = None
    mapper: Optional[FieldMapper] = None
    left_rows: List[Row] = field(default_factory=list)
    right_rows: List[Row] = field(default_factory=list)
    skipped: Set[str] = field(default_factory=set)
    adopted: Dict[str, Optional[str]] = field(default_factory=dict)
    detection: Optional[DetectionResult] = None
    plan: Optional[_Plan] = None
    outcomes: Dict[str, _Outcome] = field(default_factory=dict)
    attempted: int = 0
    written: int = 0
    halted: bool = False

    def outcome(self, key: str) -> _Outcome:
        existing = self.outcomes.get(key)
        if existing is None:
            d = self.detection
            left = d.left_rows.get(key) if d else None
            right = d.right_rows.get(key) if d else None
            existing = self.outcomes[key] = _Outcome(
                left_hash=d.left_hashes.get(key) if d else None,
                right_hash=d.right_hashes.get(key) if d else None,
                left_modified=left.modified_at if left else None,
                right_modified=right.modified_at if right else None,
            )
        return existing


# ─── Orchestrator ─────────────────────────────────────────────────────────────

class SyncOrchestrator:
    """Runs sync configurations between one left and one right endpoint."""

    def __init__(
        self,
        left: EndpointClient,
        right: EndpointClient,
        *,
        left_limiter: Optional[RateLimiter] = None,
        right_limiter: Optional[RateLimiter] = None,
        retry: Optional[RetryExecutor] = None,
        resolver: Optional[CrossReferenceResolver] = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        """
        Args:
            left: relational-record endpoint client.
            right: spreadsheet endpoint client.
            left_limiter: shared limiter for the left service.
            right_limiter: shared limiter for the right service.
            retry: retry executor used for every external call.
            resolver: cross-reference resolver for left linked tables. One is
                created on the left client when not given.
            now: wall clock for report timestamps.
        """
        self.left = left
        self.right = right
        self.left_limiter = left_limiter or RateLimiter(DEFAULT_LEFT_REQUESTS_PER_SECOND, name="left")
        self.right_limiter = right_limiter or RateLimiter(DEFAULT_RIGHT_REQUESTS_PER_SECOND, name="right")
        self.retry = retry or RetryExecutor()
        self.resolver = resolver or CrossReferenceResolver(left, self.left_limiter, self.retry)
        self._now = now

    async def run(
        self,
        config: SyncConfiguration,
        checkpoint: Optional[Checkpoint] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> RunReport:
        """
        Run every phase for one configuration and return the report.

        Args:
            config: what to sync.
            checkpoint: state from the last successful run (None on first sync).
            cancel: when set, the run stops at the next phase boundary.

        Returns:
            RunReport. report.checkpoint is what the caller should persist.
        """
        report = RunReport(config_id=config.id, started_at=self._now(), dry_run=config.dry_run)
        report.checkpoint = checkpoint
        run = _Run(config=config, checkpoint=checkpoint, report=report)
        if checkpoint is not None and checkpoint.config_id == config.id:
            run.previous = dict(checkpoint.rows)

        if not config.active:
            for phase in PHASE_ORDER:
                report.phases.append(
                    PhaseResult(phase, PhaseStatus.SKIPPED, warnings=["configuration is inactive"])
                )
            report.finished_at = self._now()
            return report

        logger.info("[%s] Sync started (%s)", config.id, config.direction.value)
        steps: List[Tuple[Phase, Callable[[_Run, PhaseResult], Awaitable[None]], Optional[str]]] = [
            (Phase.FETCHING, self._fetch, None),
            (Phase.DETECTING_CONFLICTS, self._detect, None),
            (Phase.RESOLVING_CONFLICTS, self._resolve,
             None if config.direction is SyncDirection.BIDIRECTIONAL else "one-way sync"),
            (Phase.WRITING_LEFT_TO_RIGHT, self._write_left_to_right,
             None if config.direction.writes_right else "direction excludes left to right"),
            (Phase.WRITING_RIGHT_TO_LEFT, self._write_right_to_left,
             None if self._right_to_left_active(config) else "direction excludes right to left"),
            (Phase.UPDATING_CHECKPOINT, self._update_checkpoint, None),
        ]

        for phase, body, skip_reason in steps:
            if cancel is not None and cancel.is_set() and not report.cancelled:
                report.cancelled = True
                logger.info("[%s] Sync cancelled before %s", config.id, phase.value)
            if report.cancelled:
                skip_reason = "run cancelled"
            elif run.halted:
                skip_reason = "an earlier phase failed"
            elif phase is Phase.UPDATING_CHECKPOINT:
                skip_reason = self._checkpoint_skip_reason(run)
            if skip_reason:
                report.phases.append(PhaseResult(phase, PhaseStatus.SKIPPED, warnings=[skip_reason]))
                continue
            if phase in (Phase.WRITING_LEFT_TO_RIGHT, Phase.WRITING_RIGHT_TO_LEFT) and run.plan is None:
                run.plan = self._plan(run)
            await self._run_phase(run, phase, body)

        report.status = self._final_status(run)
        report.finished_at = self._now()
        logger.info(
            "[%s] Sync finished: %s (%d written, %d error(s), %.2fs)",
            config.id,
            report.status.value,
            report.rows_written,
            len(report.errors),
            report.duration_seconds,
        )
        return report

    # ─── Phase plumbing ───────────────────────────────────────────────────────

    async def _run_phase(self, run: _Run, phase: Phase, body) -> None:
        result = PhaseResult(phase)
        started = time.monotonic()
        try:
            await body(run, result)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            kind = classify_error(exc, PHASE_DEFAULT_KIND[phase])
            logger.error("[%s] %s failed: %s", run.config.id, phase.value, exc, exc_info=True)
            result.errors.append(
                SyncErrorEntry(phase, root_message(exc), kind, attempts=attempts_of(exc))
            )
            result.status = PhaseStatus.FAILED
            if phase in (Phase.FETCHING, Phase.DETECTING_CONFLICTS):
                run.halted = True
        finally:
            result.duration_seconds = time.monotonic() - started
        if result.status is PhaseStatus.SUCCESS and result.errors:
            result.status = PhaseStatus.PARTIAL
        run.report.phases.append(result)

    @staticmethod
    def _right_to_left_active(config: SyncConfiguration) -> bool:
        # the right-to-left phase also hosts id link-backs for one-way runs
        return config.direction.writes_left

    def _checkpoint_skip_reason(self, run: _Run) -> Optional[str]:
        if run.config.dry_run:
            return "dry run"
        if run.detection is None:
            return "nothing detected"
        if run.attempted and not run.written:
            return "no writes succeeded"
        return None

    def _final_status(self, run: _Run) -> RunStatus:
        report = run.report
        for phase in (Phase.FETCHING, Phase.DETECTING_CONFLICTS):
            result = report.phase(phase)
            if result is not None and result.status is PhaseStatus.FAILED:
                return RunStatus.FAILED
        if run.attempted and not run.written and report.errors:
            return RunStatus.FAILED
        if report.errors or report.cancelled:
            return RunStatus.PARTIAL
        return RunStatus.SUCCESS

    async def _call(self, limiter: RateLimiter, operation, description: str, kind: ErrorKind):
        return await self.retry.retry(
            lambda: limiter.execute(operation),
            description=description,
            default_kind=kind,
        )

    # ─── 1. Fetching ──────────────────────────────────────────────────────────

    async def _fetch(self, run: _Run, result: PhaseResult) -> None:
        config = run.config
        # every read settles before the phase fails, so none keeps retrying after the run returns
        fetched = await asyncio.gather(
            self._call(self.left_limiter, lambda: self.left.get_schema(config.left_table),
                       f"read schema of {config.left_table}", ErrorKind.FETCH),
            self._call(self.left_limiter, lambda: self.left.list_rows(RowSelector(table=config.left_table)),
                       f"list rows of {config.left_table}", ErrorKind.FETCH),
            self._call(self.right_limiter, lambda: self.right.list_rows(RowSelector(table=config.right_table)),
                       f"list rows of {config.right_table}", ErrorKind.FETCH),
            return_exceptions=True,
        )
        failures = [r for r in fetched if isinstance(r, BaseException)]
        for extra in failures[1:]:
            result.errors.append(SyncErrorEntry(
                Phase.FETCHING, root_message(extra), classify_error(extra, ErrorKind.FETCH),
                attempts=attempts_of(extra),
            ))
        if failures:
            raise failures[0]
        schema, left_raw, right_raw = fetched
        run.schema = schema
        run.mapper = FieldMapper(config, schema, self.resolver)

        left = await run.mapper.left_to_canonical(left_raw)
        right = run.mapper.right_to_canonical(right_raw)
        result.warnings.extend(run.mapper.warnings)
        result.warnings.extend(left.warnings)
        result.warnings.extend(right.warnings)
        for failure in left.failures + right.failures:
            run.skipped.add(failure.key)
            result.errors.append(
                SyncErrorEntry(Phase.FETCHING, str(failure.error), failure.error.kind, row_id=failure.key)
            )

        run.left_rows = [r for r in left.rows if r.id not in run.skipped]
        run.right_rows = [r for r in right.rows if r.id is None or r.id not in run.skipped]
        self._adopt_unlinked(run, result)
        result.metadata.update({
            "left_rows": len(run.left_rows),
            "right_rows": len(run.right_rows),
            "skipped_rows": len(run.skipped),
        })

    def _adopt_unlinked(self, run: _Run, result: PhaseResult) -> None:
        """Link spreadsheet rows without an id to the left row with the same primary value."""
        primary = run.schema.primary_field_id if run.schema else None
        if not primary or primary not in run.mapper.mapped_fields:
            return
        linked_ids = {r.id for r in run.right_rows if r.id is not None}
        candidates: Dict[str, str] = {}
        ambiguous: Set[str] = set()
        for row in run.left_rows:
            if row.id in linked_ids:
                continue
            key = normalize_label(display_text(row.get(primary)))
            if not key:
                continue
            if key in candidates:
                ambiguous.add(key)
            candidates[key] = row.id
        for key in ambiguous:
            candidates.pop(key, None)

        adopted_rows = []
        for row in run.right_rows:
            if row.id is None:
                key = normalize_label(display_text(row.get(primary)))
                row_id = candidates.pop(key, None) if key else None
                if row_id is not None:
                    run.adopted[row_id] = row.ref
                    row = row.with_id(row_id)
            adopted_rows.append(row)
        run.right_rows = adopted_rows
        if run.adopted:
            result.warnings.append(f"Matched {len(run.adopted)} unlinked sheet row(s) by primary field")

    # ─── 2. Detecting ─────────────────────────────────────────────────────────

    async def _detect(self, run: _Run, result: PhaseResult) -> None:
        checkpoint = run.checkpoint
        if checkpoint is not None and run.skipped:
            # rows that failed to convert sit this run out entirely
            checkpoint = Checkpoint(
                config_id=checkpoint.config_id,
                rows={k: v for k, v in checkpoint.rows.items() if k not in run.skipped},
                taken_at=checkpoint.taken_at,
            )
        run.detection = detect(checkpoint, run.left_rows, run.right_rows, config_id=run.config.id)
        result.warnings.extend(run.detection.warnings)
        run.report.detected = run.detection.summary()
        run.report.conflicts.detected = len(run.detection.both_changed)
        result.metadata.update(run.report.detected)

    # ─── 3. Resolving ─────────────────────────────────────────────────────────

    async def _resolve(self, run: _Run, result: PhaseResult) -> None:
        def unresolvable(conflict: ConflictRecord, exc: ConflictError) -> None:
            run.report.conflicts.failed += 1
            result.errors.append(SyncErrorEntry(Phase.RESOLVING_CONFLICTS, str(exc), exc.kind, row_id=conflict.row_id))

        conflicts = run.detection.both_changed
        resolutions = resolve_all(conflicts, run.config.conflict_policy, on_error=unresolvable)
        for conflict in conflicts:
            resolution = conflict.resolution
            if resolution is None:
                continue
            if resolution.winner == LEFT:
                run.report.conflicts.left_won += 1
            else:
                run.report.conflicts.right_won += 1
            run.report.resolutions.append({
                "row_id": resolution.row_id,
                "conflict_type": conflict.conflict_type.value,
                "winner": resolution.winner,
                "action": resolution.action,
                "rationale": resolution.rationale,
            })
        result.metadata["resolved"] = len(resolutions)

    # ─── Planning ─────────────────────────────────────────────────────────────

    def _plan(self, run: _Run) -> _Plan:
        d = run.detection
        plan = _Plan()
        if d is None:
            return plan
        direction = run.config.direction

        def right_ref(row_id: str) -> Optional[str]:
            row = d.right_rows.get(row_id)
            return row.ref if row is not None else None

        def to_right_write(row_id: str, conflict: bool = False) -> None:
            row = d.left_rows[row_id]
            if row_id in d.right_rows:
                plan.right_update.append(_Op(row_id, row, right_ref(row_id), conflict))
            else:
                plan.right_create.append(_Op(row_id, row, None, conflict))

        def to_left_write(row_id: str, conflict: bool = False) -> None:
            row = d.right_rows[row_id]
            if row_id in d.left_rows:
                plan.left_update.append(_Op(row_id, row, row.ref, conflict))
            else:
                plan.left_create.append(_Op(row_id, row, row.ref, conflict))

        if direction is SyncDirection.BIDIRECTIONAL:
            for row_id in d.left_added + d.left_updated:
                to_right_write(row_id)
            for row_id in d.left_deleted:
                plan.right_delete.append(_Op(row_id, None, right_ref(row_id)))
            for row_id in d.right_added + d.right_updated:
                to_left_write(row_id)
            for row_id in d.right_deleted:
                plan.left_delete.append(_Op(row_id))
            for conflict in d.both_changed:
                self._plan_resolution(plan, conflict, to_right_write, to_left_write, right_ref)

        elif direction is SyncDirection.LEFT_TO_RIGHT:
            for row_id in d.left_added + d.left_updated + d.right_updated + d.right_deleted:
                to_right_write(row_id)
            for row_id in d.left_deleted:
                plan.right_delete.append(_Op(row_id, None, right_ref(row_id)))
            for conflict in d.both_changed:
                if conflict.conflict_type is ConflictType.DELETED_ON_LEFT:
                    plan.right_delete.append(_Op(conflict.row_id, None, right_ref(conflict.row_id), True))
                else:
                    to_right_write(conflict.row_id, True)

        else:
            for row_id in d.right_added + d.right_updated + d.left_updated + d.left_deleted:
                to_left_write(row_id)
            for row_id in d.right_deleted:
                plan.left_delete.append(_Op(row_id))
            for conflict in d.both_changed:
                if conflict.conflict_type is ConflictType.DELETED_ON_RIGHT:
                    plan.left_delete.append(_Op(conflict.row_id, None, None, True))
                else:
                    to_left_write(conflict.row_id, True)

        rewritten = {op.key for op in plan.right_update + plan.right_create}
        for row_id, ref in run.adopted.items():
            if row_id not in rewritten and row_id in d.right_rows:
                plan.link_only.append(_Op(row_id, d.right_rows[row_id], ref))
        return plan

    @staticmethod
    def _plan_resolution(plan: _Plan, conflict: ConflictRecord, to_right_write, to_left_write, right_ref) -> None:
        resolution = conflict.resolution
        if resolution is None:
            return
        if resolution.winner == LEFT:
            if resolution.action == ACTION_DELETE:
                plan.right_delete.append(_Op(conflict.row_id, None, right_ref(conflict.row_id), True))
            else:
                to_right_write(conflict.row_id, True)
        else:
            if resolution.action == ACTION_DELETE:
                plan.left_delete.append(_Op(conflict.row_id, None, None, True))
            else:
                to_left_write(conflict.row_id, True)

    # ─── 4. Writing left -> right ─────────────────────────────────────────────

    async def _write_left_to_right(self, run: _Run, result: PhaseResult) -> None:
        plan = run.plan
        counts = run.report.left_to_right
        result.metadata.update({
            "planned_creates": len(plan.right_create),
            "planned_updates": len(plan.right_update),
            "planned_deletes": len(plan.right_delete),
        })
        if run.config.dry_run:
            result.warnings.append(f"dry run: {plan.to_right} spreadsheet write(s) not sent")
            return

        mapper = run.mapper
        table = run.config.right_table
        await self._apply_validations(run, result)
        creates, updates, deletes = await asyncio.gather(
            self._dispatch(
                self.right, self.right_limiter,
                lambda rows: self.right.create_rows(rows, table=table),
                plan.right_create, lambda op: mapper.render_right(op.row),
                f"create rows in {table}",
            ),
            self._dispatch(
                self.right, self.right_limiter,
                lambda rows: self.right.update_rows(rows, table=table),
                plan.right_update, lambda op: mapper.render_right(op.row, ref=op.ref),
                f"update rows in {table}",
            ),
            self._dispatch(
                self.right, self.right_limiter,
                lambda ids: self.right.delete_rows(ids, table=table),
                plan.right_delete, lambda op: op.key,
                f"delete rows in {table}",
            ),
        )
        for item in creates:
            if self._record(run, result, item, counts, "added"):
                run.outcome(item.op.key).right_hash = content_hash(item.op.row.fields)
        for item in updates:
            if self._record(run, result, item, counts, "updated"):
                run.outcome(item.op.key).right_hash = content_hash(item.op.row.fields)
        for item in deletes:
            if self._record(run, result, item, counts, "deleted"):
                run.outcome(item.op.key).right_hash = None

        if not self._right_to_left_active(run.config):
            await self._link_back(run, result, plan.link_only)

    async def _apply_validations(self, run: _Run, result: PhaseResult) -> None:
        """Give the sheet's choice columns a dropdown matching the left field's options."""
        if not isinstance(self.right, ValidatingClient):
            return
        infos = [info for info in run.mapper.dropdowns if not info.positional]
        if not infos:
            return
        rules = [to_validation_rule(info) for info in infos]
        table = run.config.right_table
        try:
            await self._call(
                self.right_limiter,
                lambda: self.right.set_validations(rules, table=table),
                f"set dropdown validation on {table}",
                ErrorKind.WRITE,
            )
        except Exception as exc:
            message = f"Could not set dropdown validation on {table}: {root_message(exc)}"
            logger.warning("[%s] %s", run.config.id, message)
            result.warnings.append(message)
            return
        result.metadata["validations"] = len(rules)

    # ─── 5. Writing right -> left ─────────────────────────────────────────────

    async def _write_right_to_left(self, run: _Run, result: PhaseResult) -> None:
        plan = run.plan
        counts = run.report.right_to_left
        result.metadata.update({
            "planned_creates": len(plan.left_create),
            "planned_updates": len(plan.left_update),
            "planned_deletes": len(plan.left_delete),
        })
        if run.config.dry_run:
            result.warnings.append(f"dry run: {plan.to_left} left write(s) not sent")
            return

        creates = await self._prepare_left(run, result, plan.left_create, create=True)
        updates = await self._prepare_left(run, result, plan.left_update, create=False)
        table = run.config.left_table
        created, updated, deleted = await asyncio.gather(
            self._dispatch(
                self.left, self.left_limiter,
                lambda rows: self.left.create_rows(rows, table=table),
                [op for op, _ in creates], _payload_from(creates),
                f"create records in {table}",
            ),
            self._dispatch(
                self.left, self.left_limiter,
                lambda rows: self.left.update_rows(rows, table=table),
                [op for op, _ in updates], _payload_from(updates),
                f"update records in {table}",
            ),
            self._dispatch(
                self.left, self.left_limiter,
                lambda ids: self.left.delete_rows(ids, table=table),
                plan.left_delete, lambda op: op.key,
                f"delete records in {table}",
            ),
        )

        # sheet rows to rewrite: new ids, and values the left side normalised
        links = {op.key: op for op in plan.link_only}
        sent = {op.key: row for op, row in creates + updates}
        writes_back = run.config.direction.writes_right
        for item in created:
            if not self._record(run, result, item, counts, "added"):
                continue
            op = item.op
            new_id = item.returned.id if item.returned is not None else None
            if not new_id:
                run.outcome(op.key).failed = True
                result.errors.append(SyncErrorEntry(
                    Phase.WRITING_RIGHT_TO_LEFT, "left endpoint returned no id for a created record",
                    ErrorKind.WRITE, row_id=op.key,
                ))
                continue
            stored = self._stored_row(run, op, sent[op.key], item.returned)
            previous = run.outcome(op.key)
            del run.outcomes[op.key]
            run.outcomes[new_id] = _Outcome(
                left_hash=content_hash(stored.fields),
                right_hash=previous.right_hash,
                left_modified=item.returned.modified_at,
                right_modified=previous.right_modified,
                replaces=op.key if op.key != new_id else None,
            )
            links.pop(op.key, None)
            links[new_id] = _Op(new_id, (stored if writes_back else op.row).with_id(new_id), op.ref)
        for item in updated:
            if not self._record(run, result, item, counts, "updated"):
                continue
            op = item.op
            stored = self._stored_row(run, op, sent[op.key], item.returned)
            outcome = run.outcome(op.key)
            outcome.left_hash = content_hash(stored.fields)
            if writes_back and op.ref is not None and outcome.left_hash != content_hash(op.row.fields):
                links[op.key] = _Op(op.key, stored, op.ref)
        for item in deleted:
            if self._record(run, result, item, counts, "deleted"):
                run.outcome(item.op.key).left_hash = None

        await self._link_back(run, result, list(links.values()))

    @staticmethod
    def _stored_row(run: _Run, op: _Op, sent: Row, returned: Optional[Row]) -> Row:
        """Canonical form of what the left side holds after `sent` was written for `op`."""
        current = run.detection.left_rows.get(op.key)
        fields = dict(current.fields if current is not None else op.row.fields)
        for field_id in run.mapper.mapped_fields:
            if field_id in sent.fields:
                fields[field_id] = sent.fields[field_id]
            elif current is None:
                # computed on the left; only the endpoint knows the value
                fields[field_id] = returned.get(field_id) if returned is not None else None
        return op.row.with_fields(fields)

    async def _prepare_left(
        self, run: _Run, result: PhaseResult, ops: List[_Op], *, create: bool,
    ) -> List[Tuple[_Op, Row]]:
        """Convert canonical rows to left rows; rows failing validation are recorded and dropped."""
        if not ops:
            return []
        by_key = {op.key: op for op in ops}
        mapped = await run.mapper.canonical_to_left([op.row.with_id(op.key) for op in ops])
        result.warnings.extend(mapped.warnings)
        for failure in mapped.failures:
            op = by_key[failure.key]
            run.attempted += 1
            run.outcome(op.key).failed = True
            if op.conflict:
                run.report.conflicts.failed += 1
            run.report.right_to_left.failed += 1
            result.errors.append(SyncErrorEntry(
                Phase.WRITING_RIGHT_TO_LEFT, str(failure.error), failure.error.kind, row_id=op.key,
            ))
        prepared = []
        for row in mapped.rows:
            op = by_key[row.id]
            prepared.append((op, Row(id=None if create else op.key, fields=row.fields, modified_at=row.modified_at)))
        return prepared

    async def _link_back(self, run: _Run, result: PhaseResult, links: List[_Op]) -> None:
        """Rewrite spreadsheet rows with their left record id and the values the left side holds."""
        if not links:
            return
        table = run.config.right_table
        items = await self._dispatch(
            self.right, self.right_limiter,
            lambda rows: self.right.update_rows(rows, table=table),
            links, lambda op: run.mapper.render_right(op.row, ref=op.ref),
            f"link rows in {table}",
        )
        linked = 0
        for item in items:
            run.attempted += 1
            if item.error is None:
                run.written += 1
                linked += 1
                run.outcome(item.op.key).right_hash = content_hash(item.op.row.fields)
                continue
            run.outcome(item.op.key).failed = True
            result.errors.append(SyncErrorEntry(
                Phase.WRITING_RIGHT_TO_LEFT if self._right_to_left_active(run.config) else Phase.WRITING_LEFT_TO_RIGHT,
                f"could not write back to the sheet: {root_message(item.error)}",
                classify_error(item.error, ErrorKind.WRITE),
                row_id=item.op.key,
                attempts=attempts_of(item.error),
            ))
        result.metadata["linked"] = linked

    def _record(self, run: _Run, result: PhaseResult, item: _ItemResult, counts, counter: str) -> bool:
        """Count one write outcome. Returns True when it succeeded."""
        run.attempted += 1
        op = item.op
        if item.error is not None:
            counts.failed += 1
            run.outcome(op.key).failed = True
            if op.conflict:
                run.report.conflicts.failed += 1
            result.errors.append(SyncErrorEntry(
                result.phase,
                root_message(item.error),
                classify_error(item.error, ErrorKind.WRITE),
                row_id=op.key,
                attempts=attempts_of(item.error),
            ))
            return False
        run.written += 1
        setattr(counts, counter, getattr(counts, counter) + 1)
        if op.conflict:
            run.report.conflicts.applied += 1
        return True

    # ─── Batch dispatch ───────────────────────────────────────────────────────

    async def _dispatch(
        self,
        client: EndpointClient,
        limiter: RateLimiter,
        call: Callable[[List[Any]], Awaitable[Any]],
        ops: List[_Op],
        payload: Callable[[_Op], Any],
        description: str,
    ) -> List[_ItemResult]:
        if not ops:
            return []
        pairs = [(op, payload(op)) for op in ops]
        chunks = chunk_list(pairs, getattr(client, "max_batch_size", 10))
        results = await asyncio.gather(
            *(self._send_chunk(limiter, call, chunk, description) for chunk in chunks)
        )
        return [item for chunk_items in results for item in chunk_items]

    async def _send_chunk(self, limiter, call, chunk, description: str) -> List[_ItemResult]:
        payloads = [p for _, p in chunk]
        try:
            returned = await self._call(
                limiter, lambda: call(payloads), f"{description} ({len(chunk)} row(s))", ErrorKind.WRITE,
            )
        except OperationFailed as exc:
            if len(chunk) > 1 and not is_retryable(exc.__cause__):
                logger.warning(
                    "%s: batch of %d rejected (%s); sending rows one at a time",
                    description, len(chunk), root_message(exc),
                )
                items = []
                for pair in chunk:
                    items.extend(await self._send_chunk(limiter, call, [pair], description))
                return items
            return [_ItemResult(op, None, exc) for op, _ in chunk]
        returned = list(returned or [])
        return [
            _ItemResult(op, returned[i] if i < len(returned) else None, None)
            for i, (op, _) in enumerate(chunk)
        ]

    # ─── 6. Checkpoint ────────────────────────────────────────────────────────

    async def _update_checkpoint(self, run: _Run, result: PhaseResult) -> None:
        d = run.detection
        rows: Dict[str, RowState] = dict(run.previous)
        for row_id in d.unchanged:
            left, right = d.left_rows[row_id], d.right_rows[row_id]
            rows[row_id] = RowState(
                row_id, d.left_hashes[row_id], d.right_hashes[row_id], left.modified_at, right.modified_at,
            )
        for row_id in d.both_deleted:
            rows.pop(row_id, None)
        for key, outcome in run.outcomes.items():
            if outcome.failed:
                # the row is retried next run from the state it was last synced in
                if key in run.previous:
                    rows[key] = run.previous[key]
                else:
                    rows.pop(key, None)
                continue
            if outcome.replaces:
                rows.pop(outcome.replaces, None)
            if outcome.left_hash is None or outcome.right_hash is None:
                rows.pop(key, None)
                continue
            rows[key] = RowState(
                key, outcome.left_hash, outcome.right_hash, outcome.left_modified, outcome.right_modified,
            )

        run.report.checkpoint = Checkpoint(config_id=run.config.id, rows=rows, taken_at=self._now())
        result.metadata["rows"] = len(rows)


def _payload_from(prepared: List[Tuple[_Op, Row]]) -> Callable[[_Op], Row]:
    rows = {op.key: row for op, row in prepared}
    return lambda op: rows[op.key]


async def run_sync(
    config: SyncConfiguration,
    checkpoint: Optional[Checkpoint],
    left: EndpointClient,
    right: EndpointClient,
    **kwargs,
) -> RunReport:
    """Run one configuration with a throwaway orchestrator. See SyncOrchestrator for kwargs."""
    cancel = kwargs.pop("cancel", None)
    return await SyncOrchestrator(left, right, **kwargs).run(config, checkpoint, cancel=cancel)
