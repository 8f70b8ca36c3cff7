"""
Command-line entry point for the SafeVote bot harness.

Usage:
    safevote-bots --full
    safevote-bots --voting-only --election elec-1234 --skip-funding
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from prometheus_client import start_http_server

from .concurrency import CancelToken
from .config import Settings
from .errors import ConfigurationError, HarnessError
from .models import PopulationCounts
from .orchestrator import Orchestrator, RunMode, RunOptions
from .report import save_results

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONFIG_ERROR = 2
EXIT_SECURITY_FAILURE = 3
EXIT_RUN_ERROR = 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='safevote-bots',
        description='Run synthetic election creators, voters and security probes against SafeVote',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Full run: provision, fund, create elections, vote, probe
  safevote-bots --full

  # Small smoke run with custom populations
  safevote-bots --elections 2 --voters 20

  # Vote in an existing election without re-funding
  safevote-bots --voting-only --election elec-1234 --skip-funding

  # Probe every currently open election
  safevote-bots --security-only --active-only
        """
    )

    mode = parser.add_mutually_exclusive_group()
    mode.add_argument('--full', dest='mode', action='store_const', const=RunMode.FULL,
                      help='Run every phase (default)')
    mode.add_argument('--elections-only', dest='mode', action='store_const', const=RunMode.ELECTIONS_ONLY,
                      help='Only create elections')
    mode.add_argument('--voting-only', dest='mode', action='store_const', const=RunMode.VOTING_ONLY,
                      help='Only vote in existing elections')
    mode.add_argument('--security-only', dest='mode', action='store_const', const=RunMode.SECURITY_ONLY,
                      help='Only run ineligible-voter security probes')
    parser.set_defaults(mode=RunMode.FULL)

    parser.add_argument(
        '--elections',
        type=int,
        default=None,
        help='Number of election creator bots (default: ELECTION_BOTS)'
    )

    parser.add_argument(
        '--voters',
        type=int,
        default=None,
        help='Total voter bots, split 75/25 eligible/ineligible'
    )

    parser.add_argument(
        '--eligible',
        type=int,
        default=None,
        help='Number of eligible voter bots (overrides --voters split)'
    )

    parser.add_argument(
        '--ineligible',
        type=int,
        default=None,
        help='Number of ineligible voter bots (overrides --voters split)'
    )

    parser.add_argument(
        '--skip-funding',
        action='store_true',
        help='Do not send funding transfers'
    )

    parser.add_argument(
        '--election',
        type=str,
        default=None,
        metavar='UUID',
        help='Restrict voting and security phases to one election'
    )

    parser.add_argument(
        '--active-only',
        action='store_true',
        help='Only target elections that are currently open'
    )

    parser.add_argument(
        '--regenerate-wallets',
        action='store_true',
        help='Ignore the persisted identity file and provision again'
    )

    parser.add_argument(
        '--funding-mode',
        choices=['sequential', 'parallel'],
        default=None,
        help='Funding strategy (default: FUNDING_MODE)'
    )

    parser.add_argument(
        '--log-level',
        type=str,
        default=None,
        help='Logging level (default: LOG_LEVEL)'
    )

    return parser


def resolve_counts(args: argparse.Namespace, settings: Settings) -> PopulationCounts:
    """Population sizes from CLI flags, falling back to settings."""
    eligible = settings.ELIGIBLE_VOTER_BOTS
    ineligible = settings.INELIGIBLE_VOTER_BOTS
    if args.voters is not None:
        eligible = int(args.voters * 0.75)
        ineligible = args.voters - eligible
    if args.eligible is not None:
        eligible = args.eligible
    if args.ineligible is not None:
        ineligible = args.ineligible

    creators = args.elections if args.elections is not None else settings.ELECTION_BOTS
    return PopulationCounts(creators=creators, eligible=eligible, ineligible=ineligible)


def apply_overrides(args: argparse.Namespace, settings: Settings) -> Settings:
    """Fold CLI flags into a copy of the settings so validation sees them."""
    counts = resolve_counts(args, settings)
    update = {
        'ELECTION_BOTS': counts.creators,
        'ELIGIBLE_VOTER_BOTS': counts.eligible,
        'INELIGIBLE_VOTER_BOTS': counts.ineligible,
    }
    if args.funding_mode:
        update['FUNDING_MODE'] = args.funding_mode
    if args.log_level:
        update['LOG_LEVEL'] = args.log_level.upper()
    return settings.model_copy(update=update)


def install_signal_handlers(token: CancelToken) -> None:
    loop = asyncio.get_running_loop()

    def handler(signum):
        logger.info(f"Received signal {signum}, stopping after in-flight operations...")
        token.cancel(f"signal {signum}")

    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, handler, signum)
        except NotImplementedError:
            signal.signal(signum, lambda s, _frame: loop.call_soon_threadsafe(handler, s))


async def run(settings: Settings, options: RunOptions) -> int:
    token = CancelToken()
    install_signal_handlers(token)

    try:
        orchestrator = Orchestrator(settings, options, cancel_token=token)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIG_ERROR

    try:
        report = await orchestrator.run()
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIG_ERROR
    except HarnessError as e:
        logger.error(f"Run aborted: {e}")
        orchestrator.report.error = str(e)
        report = orchestrator.report
    finally:
        await orchestrator.close()

    print(report.generate_report())
    if settings.SAVE_REPORTS:
        save_results(report, settings.REPORTS_DIR)

    if report.critical_probes:
        return EXIT_SECURITY_FAILURE
    if report.error:
        return EXIT_RUN_ERROR
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    for name in ('elections', 'voters', 'eligible', 'ineligible'):
        value = getattr(args, name)
        if value is not None and value < 0:
            parser.error(f"--{name} cannot be negative")

    settings = apply_overrides(args, Settings())

    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )

    if settings.METRICS_PORT:
        start_http_server(settings.METRICS_PORT)
        logger.info(f"Prometheus metrics server started on port {settings.METRICS_PORT}")

    options = RunOptions(
        mode=args.mode,
        skip_funding=args.skip_funding,
        election_uuid=args.election,
        active_only=args.active_only,
        regenerate_wallets=args.regenerate_wallets,
        counts=PopulationCounts(
            settings.ELECTION_BOTS, settings.ELIGIBLE_VOTER_BOTS, settings.INELIGIBLE_VOTER_BOTS
        ),
    )
    return asyncio.run(run(settings, options))


if __name__ == '__main__':
    sys.exit(main())
