#!/usr/bin/env python3
"""
Minifigure Catalog Reconciler - Main CLI Interface

Matches Rebrickable minifigures to their BrickLink counterparts and
rebuilds the part/minifigure rarity tables. Intended to run as a periodic
batch job.
"""

import argparse
import logging
from pathlib import Path

from config.settings import settings
from reconciler.core.pipeline import ReconciliationPipeline
from reconciler.database.database import DatabaseManager
from reconciler.database.repository import CatalogRepository
from reconciler.models.schemas import RefreshStats, RunReport


class ReconcilerCLI:
    """CLI wrapper around the reconciliation pipeline"""

    def __init__(self):
        self.db_manager = DatabaseManager()
        self.repository = CatalogRepository(self.db_manager)
        self._pipeline = None

    @property
    def pipeline(self) -> ReconciliationPipeline:
        if self._pipeline is None:
            self._pipeline = ReconciliationPipeline(self.repository)
        return self._pipeline

    def initialize_database(self):
        print("🚀 Initializing catalog database...")
        if settings.database_url.startswith("sqlite:///"):
            Path(settings.database_url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)
        self.db_manager.initialize_database()
        print("✓ Database tables created")

    def run(self, budget: int = None):
        self._display_report(self.pipeline.run_all(budget=budget))

    def refresh(self, budget: int = None):
        self._display_report(self.pipeline.refresh(budget=budget))

    def match(self):
        self._display_report(self.pipeline.match())

    def rarity(self):
        self._display_report(self.pipeline.rarity())

    def show_mapping_stats(self):
        summary = self.repository.mapping_summary()

        print("Minifigure Mapping Statistics:")
        print("-" * 40)
        print(f"Total Minifigures: {summary['total_minifigs']}")
        print(f"Matched: {summary['matched']}")
        print(f"Unmatched: {summary['unmatched']}")
        if summary["matches_by_source"]:
            print("Matches by source:")
            for source, count in sorted(summary["matches_by_source"].items()):
                print(f"  {source:24s} {count}")

    def _display_refresh(self, label: str, stats: RefreshStats):
        print(
            f"{label}: {stats.crawled}/{stats.candidates} crawled, {stats.empty} empty, "
            f"{stats.rows_written} rows, {stats.errors} errors"
            + (" (budget reached)" if stats.budget_exhausted else "")
        )

    def _display_report(self, report: RunReport):
        print("\n" + "=" * 60)
        print("RECONCILIATION RUN")
        print("=" * 60)
        print(f"Started: {report.started_at:%Y-%m-%d %H:%M:%S}")
        if report.finished_at:
            print(f"Finished: {report.finished_at:%Y-%m-%d %H:%M:%S}")
        print(f"BrickLink calls: {report.api_calls}")

        if report.composition:
            print(f"Compositions ({report.composition.strategy}): {report.composition.part_rows} rows")
        if report.set_refresh:
            self._display_refresh("Set refresh", report.set_refresh)
        if report.minifig_refresh:
            self._display_refresh("Minifig refresh", report.minifig_refresh)

        if report.matches:
            print(f"New matches: {report.total_matches}")
            for source, count in sorted(report.matches.items()):
                print(f"  {source:24s} {count}")

        if report.rarity:
            print(
                f"Rarity ({report.rarity.strategy}): {report.rarity.part_rows} part rows, "
                f"{report.rarity.minifig_rows} minifig rows"
            )

        if report.failed_stages:
            print(f"❌ Failed stages: {', '.join(report.failed_stages)}")
        else:
            print("✅ All stages completed")
        print("=" * 60)


def main():
    """Main CLI interface"""
    parser = argparse.ArgumentParser(description="Minifigure Catalog Reconciler")
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    run_parser = subparsers.add_parser('run', help='Run the full pipeline')
    run_parser.add_argument('--budget', type=int, default=None,
                            help='Maximum BrickLink calls for this run (0 = unlimited)')

    refresh_parser = subparsers.add_parser('refresh', help='Crawl missing BrickLink data only')
    refresh_parser.add_argument('--budget', type=int, default=None,
                                help='Maximum BrickLink calls for this run (0 = unlimited)')

    subparsers.add_parser('match', help='Run the matching tiers without crawling')
    subparsers.add_parser('rarity', help='Rebuild the rarity tables only')
    subparsers.add_parser('stats', help='Show minifigure mapping statistics')
    subparsers.add_parser('init-db', help='Create database tables')

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    cli = ReconcilerCLI()

    try:
        if args.command == 'run':
            cli.run(args.budget)
        elif args.command == 'refresh':
            cli.refresh(args.budget)
        elif args.command == 'match':
            cli.match()
        elif args.command == 'rarity':
            cli.rarity()
        elif args.command == 'stats':
            cli.show_mapping_stats()
        elif args.command == 'init-db':
            cli.initialize_database()
        else:
            parser.print_help()
    finally:
        cli.db_manager.close_all_sessions()


if __name__ == "__main__":
    main()
