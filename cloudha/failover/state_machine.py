"""
Failover state machine

One failover run walks

    IDLE -> ACQUIRING_LOCK -> LOADING_STATUS -> [RECOVERING] -> RUNNING -> SUCCEEDED | FAILED -> IDLE

The run record in the registry coordinates runs across hosts. The local
lock file only covers the gap between starting and writing RUNNING to that
record. The NIC mutations a run is about to apply are persisted first, so a
run that dies part way through can be replayed by the next one.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Tuple

from prometheus_client import Counter, Histogram
from pydantic import ValidationError

from ..clients.device import fetch_device_snapshot
from ..core.context import HAContext
from ..core.errors import CloudHAError, LockTimeout, RecordNotFound, RegistryError
from ..core.logs import SILLY
from ..core.models import DesiredConfiguration, DeviceState, FailoverRunRecord, NetworkMutationPlan, RunStatus
from ..core.retry import poll_until
from ..network.reconcile import NetworkReconciler
from ..storage.registry import FAILOVER_NAMESPACE, FAILOVER_STATUS_KEY
from .lock import FailoverLock

logger = logging.getLogger(__name__)

FAILOVER_RUNS = Counter('cloudha_failover_runs_total', 'Failover runs', ['outcome'])
FAILOVER_RUN_DURATION = Histogram('cloudha_failover_run_seconds', 'Failover run duration')
FAILOVER_RECOVERIES = Counter('cloudha_failover_recoveries_total', 'Failover runs replaying a previous task')


class FailoverState(Enum):
    """Failover run state"""
    IDLE = "idle"
    ACQUIRING_LOCK = "acquiring_lock"
    LOADING_STATUS = "loading_status"
    RECOVERING = "recovering"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class FailoverResult:
    """Outcome of a successful run"""
    status: RunStatus
    recovered: bool = False
    plan: NetworkMutationPlan = field(default_factory=NetworkMutationPlan)
    duration: float = 0.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class FailoverRunner:
    """Runs one failover pass for the local device"""

    def __init__(self, context: HAContext, reconciler: Optional[NetworkReconciler] = None,
                 lock: Optional[FailoverLock] = None, clock: Callable[[], datetime] = _utcnow):
        self.context = context
        self.config = context.config
        self.reconciler = reconciler or NetworkReconciler(context)
        self.lock = lock or FailoverLock(self.config.lock_file, self.config.lock_attempts,
                                         self.config.lock_interval)
        self.clock = clock

        self.state = FailoverState.IDLE
        self.history: List[FailoverState] = [FailoverState.IDLE]

    def _transition(self, state: FailoverState):
        logger.info(f"Failover state: {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    # Run record

    async def load_record(self) -> FailoverRunRecord:
        """Read the run record, creating an empty one on first use"""
        try:
            blob = await self.context.registry.get(FAILOVER_NAMESPACE, FAILOVER_STATUS_KEY)
        except RecordNotFound:
            logger.info("No failover record found, creating one")
            record = FailoverRunRecord()
            await self.save_record(record)
            return record
        try:
            return FailoverRunRecord.model_validate(blob)
        except ValidationError as e:
            raise RegistryError(f"Unreadable failover record: {e}")

    async def save_record(self, record: FailoverRunRecord):
        logger.log(SILLY, f"Saving failover record: {record.to_blob()}")
        await self.context.registry.put(FAILOVER_NAMESPACE, FAILOVER_STATUS_KEY, record.to_blob())

    async def _resolve_in_progress(self, record: FailoverRunRecord) -> Tuple[FailoverRunRecord, bool]:
        """Decide whether a RUNNING or FAILED record means we must replay it

        Returns the latest record and whether to recover.
        """
        if record.status == RunStatus.FAILED:
            logger.info("Previous failover task failed, recovering")
            return record, True

        age = record.age_seconds(self.clock())
        logger.log(SILLY, f"Running task age: {age}, max: {self.config.max_running_task_seconds}")
        if age is None or age > self.config.max_running_task_seconds:
            logger.info(f"Recovering from previous task, age: {age}")
            return record, True

        logger.info("Failover already in progress, waiting for it to finish")
        deadline = time.monotonic() + (self.config.max_running_task_seconds - age)
        latest, resolved = await poll_until(
            self.load_record,
            lambda r: r.status != RunStatus.RUNNING,
            interval=self.config.status_poll_interval,
            deadline=deadline,
        )
        if not resolved:
            logger.info("Previous task exceeded maximum running time, recovering")
            return latest, True
        if latest.status == RunStatus.FAILED:
            logger.info("Previous task failed while waiting, recovering")
            return latest, True
        logger.info("Previous task finished, starting a fresh run")
        return latest, False

    # Run

    async def _fetch_device_state(self) -> DeviceState:
        tg_stats, global_settings, self_ips, virtual_addresses = await fetch_device_snapshot(self.context.device)
        logger.log(SILLY, "BIG-IP information successfully retrieved")
        return DeviceState.from_device(tg_stats, global_settings, self_ips, virtual_addresses)

    async def _perform(self, record: FailoverRunRecord, recover: bool) -> NetworkMutationPlan:
        device_state = await self._fetch_device_state()
        route_tables, nics, public_ips = await asyncio.gather(
            self.context.inventory.list_route_tables(),
            self.context.inventory.list_nics(),
            self.context.inventory.list_public_ips(),
        )

        logger.info("Performing failover")
        plan = self.reconciler.plan(device_state, route_tables, nics, public_ips)
        if recover and not record.desired_configuration.is_empty():
            logger.info("Replacing computed NIC changes with the previous desired configuration")
            desired = record.desired_configuration
            plan = NetworkMutationPlan(
                disassociate=list(desired.disassociate),
                associate=list(desired.associate),
                routes=plan.routes,
            )

        record.desired_configuration = plan.desired_configuration()
        await self.save_record(record)

        await self.reconciler.apply(plan)
        return plan

    async def run(self) -> FailoverResult:
        """Run one failover pass; raises on lock timeout or unrecovered error"""
        start_time = time.time()
        self._transition(FailoverState.ACQUIRING_LOCK)
        try:
            await self.lock.acquire()
        except LockTimeout:
            FAILOVER_RUNS.labels(outcome="lock_timeout").inc()
            self._transition(FailoverState.IDLE)
            raise

        record: Optional[FailoverRunRecord] = None
        try:
            self._transition(FailoverState.LOADING_STATUS)
            record = await self.load_record()
            logger.debug(f"Failover database status: {record.status.value if record.status else None}")

            recover = False
            if record.is_in_progress():
                record, recover = await self._resolve_in_progress(record)
            if recover:
                self._transition(FailoverState.RECOVERING)
                FAILOVER_RECOVERIES.inc()

            self._transition(FailoverState.RUNNING)
            record.status = RunStatus.RUNNING
            record.time_stamp = _iso(self.clock())
            await self.save_record(record)
            self.lock.release()

            plan = await self._perform(record, recover)

            record.status = RunStatus.SUCCEEDED
            # applied moves must never be replayed by a later recovery
            record.desired_configuration = DesiredConfiguration()
            await self.save_record(record)
            self._transition(FailoverState.SUCCEEDED)
            FAILOVER_RUNS.labels(outcome="succeeded").inc()
            logger.info("Failover finished successfully")
            return FailoverResult(
                status=RunStatus.SUCCEEDED,
                recovered=recover,
                plan=plan,
                duration=time.time() - start_time,
            )
        except Exception as e:
            self._transition(FailoverState.FAILED)
            FAILOVER_RUNS.labels(outcome="failed").inc()
            logger.error(f"Failover failed: {e}")
            if record is not None:
                record.status = RunStatus.FAILED
                record.time_stamp = _iso(self.clock())
                try:
                    await self.save_record(record)
                except CloudHAError as persist_error:
                    logger.error(f"Failed to persist FAILED status: {persist_error}")
            raise
        finally:
            self.lock.release()
            FAILOVER_RUN_DURATION.observe(time.time() - start_time)
            self._transition(FailoverState.IDLE)
