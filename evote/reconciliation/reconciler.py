"""
Periodic reconciliation worker.

Compares each candidate's vote_count and each voter's has_voted flag with the
ballots table and, when they disagree, rewrites them from the ledger. The
ledger is never modified.
"""
import logging
import signal
import sys
import threading
import time
from typing import Dict

from prometheus_client import Counter, Gauge, start_http_server

from evote.shared.errors import StorageError, TransientStorageError

from .config import config
from .database import Database

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)
logger = logging.getLogger(__name__)

# Prometheus metrics
reconciliation_runs = Counter(
    'reconciliation_runs_total',
    'Total number of reconciliation passes',
    ['outcome']
)

reconciliation_repairs = Counter(
    'reconciliation_repairs_total',
    'Rows rewritten from the ballot ledger',
    ['kind']
)

counter_discrepancies = Gauge(
    'reconciliation_discrepancies',
    'Rows disagreeing with the ballot ledger at the last check',
    ['kind']
)

last_success = Gauge(
    'reconciliation_last_success_timestamp_seconds',
    'Unix time of the last successful reconciliation pass'
)


class ReconciliationWorker:
    """Runs reconciliation passes on a fixed interval."""

    def __init__(self, database: Database = None, cfg=config):
        self.config = cfg
        self.database = database
        self.stop_event = threading.Event()

    def _handle_shutdown(self, signum, frame):
        """Handle graceful shutdown on SIGTERM/SIGINT."""
        logger.info(f"Shutdown signal received: {signum}")
        self.stop_event.set()

    def initialize(self):
        if self.database is None:
            self.database = Database(self.config)
            self.database.connect()

    def _with_retry(self, func):
        attempt = 1
        while True:
            try:
                return func()
            except TransientStorageError as e:
                if attempt >= self.config.MAX_RETRY_ATTEMPTS:
                    raise
                delay = self.config.RETRY_DELAY_SECONDS * (2 ** (attempt - 1))
                logger.warning(
                    f"Transient failure (attempt {attempt}/{self.config.MAX_RETRY_ATTEMPTS}), "
                    f"retrying in {delay:.2f}s: {e.message}"
                )
                time.sleep(delay)
                attempt += 1

    def run_once(self) -> Dict[str, int]:
        """
        Run one check-and-repair pass.

        The check is read-only; the repair transaction (which locks the
        ballots table) only runs when drift was found.

        Returns:
            Dict with candidatesRepaired and votersRepaired counts
        """
        discrepancies = self._with_retry(self.database.find_discrepancies)
        counter_discrepancies.labels(kind='candidate').set(len(discrepancies['candidates']))
        counter_discrepancies.labels(kind='voter').set(len(discrepancies['voters']))

        if not discrepancies['candidates'] and not discrepancies['voters']:
            logger.debug("Counters agree with the ledger")
            result = {'candidatesRepaired': 0, 'votersRepaired': 0}
        else:
            for row in discrepancies['candidates']:
                logger.warning(
                    f"Candidate {row['id']} vote_count={row['voteCount']} "
                    f"but ledger has {row['ledgerCount']}"
                )
            for row in discrepancies['voters']:
                logger.warning(
                    f"Voter {row['id']} has_voted={row['hasVoted']} "
                    f"but ballot present={row['hasBallot']}"
                )
            candidates_fixed, voters_fixed = self._with_retry(self.database.reconcile)
            reconciliation_repairs.labels(kind='candidate').inc(candidates_fixed)
            reconciliation_repairs.labels(kind='voter').inc(voters_fixed)
            logger.info(
                f"Repaired {candidates_fixed} candidates and {voters_fixed} voters from the ledger"
            )
            result = {'candidatesRepaired': candidates_fixed, 'votersRepaired': voters_fixed}

        reconciliation_runs.labels(outcome='success').inc()
        last_success.set(time.time())
        return result

    def run(self):
        """Run passes until a shutdown signal arrives."""
        signal.signal(signal.SIGTERM, self._handle_shutdown)
        signal.signal(signal.SIGINT, self._handle_shutdown)

        try:
            self.initialize()

            logger.info(f"Starting Prometheus metrics server on port {self.config.PROMETHEUS_PORT}")
            start_http_server(self.config.PROMETHEUS_PORT)

            while not self.stop_event.is_set():
                try:
                    self.run_once()
                except StorageError as e:
                    reconciliation_runs.labels(outcome='error').inc()
                    logger.error(f"Reconciliation pass failed: {e.message}")
                self.stop_event.wait(self.config.RECONCILE_INTERVAL_SECONDS)

        except StorageError as e:
            logger.error(f"Worker error: {e.message}", exc_info=True)
            sys.exit(1)
        finally:
            self.cleanup()

    def cleanup(self):
        """Cleanup resources on shutdown."""
        logger.info("Cleaning up resources...")
        if self.database:
            self.database.close()
        logger.info("Cleanup complete. Worker shutting down.")


def main():
    """Main entry point."""
    logger.info("=" * 60)
    logger.info("Starting Reconciliation Worker")
    logger.info(f"PostgreSQL: {config.POSTGRES_HOST}:{config.POSTGRES_PORT}/{config.POSTGRES_DB}")
    logger.info(f"Interval: {config.RECONCILE_INTERVAL_SECONDS}s")
    logger.info("=" * 60)

    worker = ReconciliationWorker()
    worker.run()


if __name__ == '__main__':
    main()
