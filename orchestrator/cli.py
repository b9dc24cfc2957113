"""
Mirror Bot CLI.
Command-line interface for running and inspecting the mirror orchestrator.
"""

import asyncio
import argparse
import json
import logging
import sys
from typing import Any, Dict, Optional

from utils.logging_config import setup_logging
from utils.timeparse import utc_day_key

from .config import ConfigError, MirrorConfig
from .engine import GeoblockedError, MirrorOrchestrator


logger = logging.getLogger(__name__)


class MirrorCLI:
    """Command-line interface for the mirror orchestrator."""

    COMMANDS = ("run", "run-once", "scores", "status", "check-config")

    def __init__(self):
        self.orchestrator: Optional[MirrorOrchestrator] = None

    def build_parser(self) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            description="Polymarket leader mirror bot",
            formatter_class=argparse.RawDescriptionHelpFormatter,
            epilog="""
Examples:
  python -m orchestrator.cli check-config       # Validate environment configuration
  python -m orchestrator.cli run-once           # One selection + poll pass
  python -m orchestrator.cli run                # Run continuously
  python -m orchestrator.cli scores --json      # Score the monitored wallets
  python -m orchestrator.cli status             # Persisted state summary
            """
        )

        parser.add_argument(
            "command",
            choices=self.COMMANDS,
            help="Command to execute"
        )

        parser.add_argument(
            "--live",
            action="store_true",
            help="Override DRY_RUN and place real orders"
        )

        # Output options
        parser.add_argument(
            "--json",
            action="store_true",
            help="Output in JSON format"
        )

        parser.add_argument(
            "--verbose",
            action="store_true",
            help="Enable verbose logging"
        )
        return parser

    def run(self, argv=None) -> int:
        """Run the CLI; returns the process exit code."""
        args = self.build_parser().parse_args(argv)

        try:
            config = MirrorConfig.from_environment()
            if args.live:
                config.execution.dry_run = False
                config.allowance.dry_run = False
            config.validate()
        except ConfigError as e:
            print(f"✗ {e}", file=sys.stderr)
            return 2

        setup_logging(
            level="DEBUG" if args.verbose else config.log_level,
            log_dir=config.log_dir,
        )

        try:
            return asyncio.run(self._execute_command(args, config))
        except GeoblockedError as e:
            print(f"✗ Geoblocked: {e}", file=sys.stderr)
            return 1
        except KeyboardInterrupt:
            print("\nInterrupted")
            return 130

    async def _execute_command(self, args, config: MirrorConfig) -> int:
        """Execute the CLI command."""
        command = args.command

        if command == "check-config":
            return self._cmd_check_config(args, config)

        self.orchestrator = MirrorOrchestrator(config)
        try:
            if command == "run":
                await self._cmd_run(args)
            elif command == "run-once":
                await self._cmd_run_once(args)
            elif command == "scores":
                await self._cmd_scores(args)
            elif command == "status":
                self._cmd_status(args)
        finally:
            await self.orchestrator.close()
        return 0

    def _cmd_check_config(self, args, config: MirrorConfig) -> int:
        """Print the (validated) configuration."""
        if args.json:
            self._print_json(config.to_dict())
        else:
            print("✓ Configuration valid")
            print(f"  Wallets:     {', '.join(config.target_wallets)}")
            print(f"  Follow mode: {config.selection.follow_mode.value}")
            print(f"  Dry run:     {'Yes' if config.dry_run else 'No'}")
            print(f"  Signature:   type {config.signature_type}")
            print(f"  Funder:      {config.funder_address or '-'}")
        return 0

    async def _cmd_run(self, args):
        """Run continuously until interrupted."""
        print(f"✓ Starting mirror bot ({'dry run' if self.orchestrator.config.dry_run else 'LIVE'})")
        try:
            await self.orchestrator.run()
        except asyncio.CancelledError:
            await self.orchestrator.stop()

    async def _cmd_run_once(self, args):
        """Evaluate selection and poll every wallet a single time."""
        results = await self.orchestrator.run_once()
        summary: Dict[str, Any] = {
            "selection": self.orchestrator.selection.to_dict(),
            "results": [r.to_dict() for r in results],
            "counters": dict(self.orchestrator.counters),
        }
        if args.json:
            self._print_json(summary)
            return

        selection = self.orchestrator.selection
        print(f"✓ Poll completed ({selection.mode.value}: {selection.reason})")
        for leader in selection.leaders:
            print(f"  Leader {leader.wallet}  score={leader.score:.4f}  weight={leader.weight:.2f}")
        print(f"  Signals decided: {len(results)}")
        for result in results:
            print(f"    - {result.status.value:8} {result.reason_code.value:28} {result.reason}")

    async def _cmd_scores(self, args):
        """Score the monitored wallets without trading."""
        scores = await self.orchestrator.scoring.compute_scores(self.orchestrator.wallets)
        if args.json:
            self._print_json([s.to_dict() for s in scores])
            return
        print("\nWallet Scores:")
        print("-" * 72)
        for score in sorted(scores, key=lambda s: s.score, reverse=True):
            flag = "✓" if score.eligible else "✗"
            print(
                f"  {flag} {score.wallet}  score={score.score:>12.4f}  roi={score.roi:+.2%}  "
                f"closed={score.sample}  realized=${score.realized_pnl_sum:+,.2f}"
            )
            if score.error:
                print(f"      error: {score.error}")
        print("-" * 72)

    def _cmd_status(self, args):
        """Print the persisted state summary."""
        status = self.orchestrator.store.get_status_summary(utc_day_key())
        status["latest_scores"] = self.orchestrator.store.get_latest_scores()
        if args.json:
            self._print_json(status)
            return

        leader = status["leader"]
        last_trade = status["last_trade"]
        print("\nMirror Bot Status:")
        print("-" * 40)
        print(f"  Leader:         {leader.get('current_leader') or '-'}")
        print(f"  Top-K:          {', '.join(status['topk']) or '-'}")
        print(f"  Daily notional: ${status['daily_notional']:,.2f} ({status['day']})")
        print(f"  Processed:      {status['processed_signals']}")
        for name, count in sorted(status["processed_by_status"].items()):
            print(f"    {name:10} {count}")
        print(f"  Last trade:     {last_trade.get('trade_key') or '-'}")
        print("-" * 40)

    def _print_json(self, payload: Any):
        print(json.dumps(payload, indent=2, default=str))


def main():
    """Main entry point."""
    cli = MirrorCLI()
    sys.exit(cli.run())


if __name__ == "__main__":
    main()
