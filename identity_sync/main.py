"""
Main orchestrator and command line entry point for Identity Sync.

Loads configuration, fetches the roster, builds the downstream adapters and
dispatches to the requested mode. The process exit code reports the outcome.
"""

import sys
import logging
import argparse
from datetime import datetime
from typing import Dict, Any, List, Optional, Callable

from identity_sync.config import load_config, ConfigurationError
from identity_sync.context import RunContext
from identity_sync.errors import FatalRunError
from identity_sync.roster import RosterSource, Person
from identity_sync.engine import ReconciliationEngine, PhaseResult
from identity_sync.clean import DiffReconciler
from identity_sync.adapters import IdentityProviderAdapter, BusinessAppAdapter, ContentShareAdapter
from identity_sync.logging_setup import setup_logging
from identity_sync.notifications import send_failure_notification, send_run_summary

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_HELP = 1
EXIT_CONFIG_ERROR = 2
EXIT_USAGE_ERROR = 3
EXIT_FATAL = 4
EXIT_PARTIAL_FAILURE = 5

MODES = ('add', 'delete', 'clean', 'list')


class UsageError(Exception):
    """Raised for missing, unknown or conflicting command line arguments."""
    pass


class SyncArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that reports usage errors instead of exiting with status 2."""

    def error(self, message):
        raise UsageError(message)


def build_parser() -> SyncArgumentParser:
    parser = SyncArgumentParser(
        prog='identity-sync',
        description='Synchronize the corporate roster into the identity provider, '
                    'business apps and content-share system',
        add_help=False
    )
    modes = parser.add_mutually_exclusive_group()
    modes.add_argument('--add', dest='mode', action='store_const', const='add',
                       help='Synchronize roster users into every downstream system')
    modes.add_argument('--delete', dest='mode', action='store_const', const='delete',
                       help='Remove roster users from every downstream system')
    modes.add_argument('--clean', dest='mode', action='store_const', const='clean',
                       help='Interactively remove downstream users no longer on the roster')
    modes.add_argument('--list', dest='mode', action='store_const', const='list',
                       help='Fetch and print the roster without changing anything')
    modes.add_argument('-h', '--help', dest='mode', action='store_const', const='help',
                       help='Print this message')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    return parser


class SyncOrchestrator:
    """
    Runs one Identity Sync invocation.

    Owns the adapters for the duration of the run and turns the engine's
    phase results into an exit code, log summary and optional email.
    """

    def __init__(self, config_path: Optional[str] = None, mode: str = 'add',
                 prompt: Callable[[str], str] = input, output: Callable[[str], None] = print):
        """
        Initialize sync orchestrator.

        Args:
            config_path: Path to configuration file
            mode: One of add, delete, clean, list
            prompt: Operator input for clean mode confirmations
            output: Sink for progress lines and the roster listing
        """
        if mode not in MODES:
            raise ValueError(f"Unknown mode '{mode}'")

        self.config = None
        self.config_path = config_path
        self.mode = mode
        self.prompt = prompt
        self.output = output

        self.identity_provider = None
        self.business_apps = []
        self.content_share = None

        self.sync_stats = {
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0,
            'persons': 0,
            'results': []
        }

    def run(self) -> int:
        """
        Run the requested mode.

        Returns:
            Exit code
        """
        try:
            self.sync_stats['start_time'] = datetime.now()

            self._load_configuration()
            setup_logging(self.config.get('logging', {}))
            logger.info(f"Starting Identity Sync in {self.mode} mode")

            persons = self._fetch_roster()
            if self.mode == 'list':
                self._print_roster(persons)
                return EXIT_SUCCESS

            self._build_adapters()
            results = self._dispatch(persons)
            self.sync_stats['results'] = results

            self.sync_stats['end_time'] = datetime.now()
            self.sync_stats['runtime_seconds'] = (
                self.sync_stats['end_time'] - self.sync_stats['start_time']
            ).total_seconds()

            self._log_run_summary()
            self._send_run_summary()
            return self._exit_code(results)

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIG_ERROR
        except FatalRunError as e:
            logger.error(f"Fatal error: {e}")
            self._send_failure_notification("Sync Aborted", str(e))
            return EXIT_FATAL
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._send_failure_notification("Sync Failed", f"Unexpected error: {e}")
            return EXIT_FATAL
        finally:
            self._cleanup()

    def _load_configuration(self):
        self.config = load_config(self.config_path)
        logger.debug("Configuration loaded successfully")

    def _fetch_roster(self) -> List[Person]:
        default_memberships = self.config['defaults'].get('application_memberships', [])
        persons = RosterSource(self.config['roster'], default_memberships).fetch()
        self.sync_stats['persons'] = len(persons)
        self.output(f"Retrieved [{len(persons)}] person entries from the roster")
        return persons

    def _print_roster(self, persons: List[Person]):
        email_domain = self.config['organization'].get('email_domain')
        for person in persons:
            manager = person.with_manager_email(email_domain).manager_ref or '-'
            memberships = ','.join(sorted(person.application_memberships)) or '-'
            self.output(f"{person.id}\t{person.display_name}\t{person.role}\t{manager}\t{memberships}")

    def _build_adapters(self):
        error_handling = self.config.get('error_handling', {})
        self.identity_provider = IdentityProviderAdapter(self.config['identity_provider'], error_handling)
        self.business_apps = [BusinessAppAdapter(app_config, error_handling)
                              for app_config in self.config['business_apps']]
        if self.config.get('content_share'):
            self.content_share = ContentShareAdapter(self.config['content_share'], error_handling)

    def _dispatch(self, persons: List[Person]) -> List[PhaseResult]:
        engine = ReconciliationEngine(self.config, self.identity_provider, self.business_apps,
                                      self.content_share, output=self.output)
        ctx = engine.refresh_token(RunContext.create(self.config))

        if self.mode == 'add':
            return engine.run_add(ctx, persons)
        if self.mode == 'delete':
            return engine.run_delete(ctx, persons)
        return [DiffReconciler(engine, self.config['clean'], prompt=self.prompt).run(ctx, persons)]

    def _exit_code(self, results: List[PhaseResult]) -> int:
        aborted = [result for result in results if result.aborted]
        if aborted:
            self._send_failure_notification(f"{aborted[0].name} phase aborted", aborted[0].aborted)
            return EXIT_FATAL
        if any(result.failed for result in results):
            logger.warning("Sync completed with per-person failures")
            return EXIT_PARTIAL_FAILURE
        logger.info("Sync completed successfully")
        return EXIT_SUCCESS

    def _log_run_summary(self):
        stats = self.sync_stats
        logger.info("=== Sync Summary ===")
        logger.info(f"Mode: {self.mode}")
        logger.info(f"Total runtime: {stats['runtime_seconds']:.2f} seconds")
        logger.info(f"Roster persons: {stats['persons']}")
        for result in stats['results']:
            logger.info(f"--- {result.name}: {result.succeeded}/{result.total} succeeded ---")
            for failure in result.failures:
                logger.info(f"  {failure.person_id}: {failure.step} in {failure.system}: {failure.message}")

    def _send_failure_notification(self, title: str, error_message: str):
        try:
            send_failure_notification(title, error_message, (self.config or {}).get('notifications', {}),
                                      {'Mode': self.mode})
        except Exception as e:
            logger.error(f"Failed to send failure notification: {e}")

    def _send_run_summary(self):
        try:
            send_run_summary(self.mode, self.sync_stats['results'], self.sync_stats['runtime_seconds'],
                             self.config.get('notifications', {}))
        except Exception as e:
            logger.error(f"Failed to send run summary: {e}")

    def _cleanup(self):
        adapters = [self.identity_provider, self.content_share] + self.business_apps
        for adapter in adapters:
            if adapter:
                adapter.close()


def main(argv: Optional[List[str]] = None):
    """Main entry point for the application."""
    parser = build_parser()

    try:
        args = parser.parse_args(argv)
    except UsageError as e:
        print(f"{e}.  Try {parser.prog} --help", file=sys.stderr)
        sys.exit(EXIT_USAGE_ERROR)

    if args.mode == 'help':
        parser.print_help()
        sys.exit(EXIT_HELP)

    if not args.mode:
        print(f"Missing command line arguments.  Try {parser.prog} --help", file=sys.stderr)
        sys.exit(EXIT_USAGE_ERROR)

    orchestrator = SyncOrchestrator(config_path=args.config, mode=args.mode)
    sys.exit(orchestrator.run())


if __name__ == "__main__":
    main()
