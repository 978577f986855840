"""
Indexer Scheduler

Runs ingestion cycles on a background thread.

CONFIGURATION:
- VAULTINDEX_SCHEDULER_ENABLED: Run inside the API process (default: false)
- VAULTINDEX_POLL_INTERVAL_SECONDS: Seconds to wait once caught up (default: 5)

USAGE:
    scheduler = create_indexer()   # or IndexerScheduler(controller, config)
    scheduler.start()

    # Or run a single sync pass in the foreground
    results = scheduler.run_once()

    # Stop gracefully (in-flight batch is cancelled before commit)
    scheduler.stop()

FAILURE MODEL:
- Transient failures (source down, store busy) that outlast the retries
  are logged; the loop tries again after the poll interval.
- StoreCorruptionError and OrderingConflictError are fatal: the loop
  stops and `fatal_error` is set. Retrying cannot fix either.
"""

import logging
import threading
from typing import Optional

from .abi import ContractRole
from .backfill import ContractReader, Web3ContractReader
from .controller import CycleResult, IngestionController
from .decoder import EventDecoder
from .errors import IndexerError, OrderingConflictError
from .source import EventSource, InMemoryChain, Web3EventSource
from ..config import IndexerConfig
from ..db.store import EntityStore, EntityStoreError, StoreCorruptionError, create_entity_store

logger = logging.getLogger(__name__)


class IndexerScheduler:
    """Background runner for the ingestion controller."""

    def __init__(
        self,
        controller: IngestionController,
        config: Optional[IndexerConfig] = None,
    ):
        self._controller = controller
        self._config = config or controller.config

        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self.fatal_error: Optional[Exception] = None
        self.last_results: list[CycleResult] = []

    @property
    def controller(self) -> IngestionController:
        return self._controller

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start the background scheduler."""
        if not self._config.scheduler_enabled:
            logger.info("Indexer scheduler disabled (set VAULTINDEX_SCHEDULER_ENABLED=1 to enable)")
            return

        if self._running:
            logger.warning("Indexer scheduler already running")
            return

        if self.fatal_error is not None:
            logger.error(f"Indexer scheduler not started after fatal error: {self.fatal_error}")
            return

        self._running = True
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="indexer", daemon=True)
        self._thread.start()

        logger.info(
            f"Indexer scheduler started (batch_blocks={self._config.batch_blocks}, "
            f"confirmations={self._config.confirmations}, "
            f"interval={self._config.poll_interval_seconds}s)"
        )

    def stop(self, timeout: float = 10.0) -> None:
        """Stop the background scheduler."""
        if not self._running:
            return

        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)

        self._running = False
        logger.info("Indexer scheduler stopped")

    def run_once(self) -> list[CycleResult]:
        """One sync pass: ingest until caught up (or stopped)."""
        self.last_results = self._controller.sync(cancel=self._stop_event)
        return self.last_results

    def _run_loop(self) -> None:
        """Background thread main loop."""
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except (StoreCorruptionError, OrderingConflictError) as e:
                self.fatal_error = e
                self._controller.metrics.record_cycle_failure()
                logger.critical(f"Indexer stopped: {e}")
                self._running = False
                return
            except (IndexerError, EntityStoreError) as e:
                self._controller.metrics.record_cycle_failure()
                logger.error(f"Ingestion cycle failed: {e}")
            except Exception as e:
                self._controller.metrics.record_cycle_failure()
                logger.exception(f"Unexpected error in ingestion cycle: {e}")

            self._stop_event.wait(timeout=self._config.poll_interval_seconds)

    def get_status(self) -> dict:
        """Current scheduler status."""
        checkpoint = self._controller.store.get_checkpoint()
        return {
            "running": self._running,
            "fatal_error": str(self.fatal_error) if self.fatal_error else None,
            "checkpoint_sequence": checkpoint.sequence,
            "cursor": list(checkpoint.cursor),
            "scanned_block": checkpoint.scanned_block,
            "poll_interval_seconds": self._config.poll_interval_seconds,
        }


def create_indexer(
    config: Optional[IndexerConfig] = None,
    store: Optional[EntityStore] = None,
    source: Optional[EventSource] = None,
) -> IndexerScheduler:
    """
    Wire source, store and controller from configuration.

    Without VAULTINDEX_RPC_URL the source is an in-memory chain, which is
    only useful for development and tests.
    """
    config = config or IndexerConfig.from_env()
    store = store or create_entity_store()
    reader: Optional[ContractReader] = None

    if source is None and config.rpc_url:
        web3_source = Web3EventSource(
            config.rpc_url,
            list(config.contract_addresses.values()),
            timeout_seconds=config.rpc_timeout_seconds,
        )
        docu_vault = config.contract_addresses.get(ContractRole.DOCU_VAULT)
        if docu_vault:
            reader = Web3ContractReader(web3_source.w3, docu_vault)
        source = web3_source
    elif source is None:
        source = InMemoryChain(config.contract_addresses or None)

    roles = config.address_roles()
    if roles is None and isinstance(source, InMemoryChain):
        roles = source.contract_roles

    controller = IngestionController(
        source,
        store,
        decoder=EventDecoder(roles),
        reader=reader,
        config=config,
    )
    return IndexerScheduler(controller, config)
