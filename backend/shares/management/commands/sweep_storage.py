"""
Management command to run the retention sweep.

Usage:
    python manage.py sweep_storage           # sweep now, then every CLEANUP_INTERVAL_MINUTES
    python manage.py sweep_storage --once    # single pass, then exit
"""

import signal

from django.core.management.base import BaseCommand

from shares.options import ShareOptions
from shares.services import SweepLoop, build_sweep_lease, build_sweeper


class Command(BaseCommand):
    help = 'Expire, reap and purge one-time share artifacts, once or on a fixed interval'

    def add_arguments(self, parser):
        parser.add_argument(
            '--once',
            action='store_true',
            help='Run a single sweep pass and exit',
        )

    def handle(self, *args, **options):
        share_options = ShareOptions.from_settings()
        sweeper = build_sweeper(share_options)
        lease = build_sweep_lease(share_options)

        if options['once']:
            self.stdout.write(self.style.NOTICE('Running retention sweep...'))
            report = sweeper.run_exclusive(lease)
            if report is None:
                self.stdout.write(self.style.WARNING('Another sweep holds the lease, nothing done'))
                return
            self._write_report(report)
            return

        loop = SweepLoop(sweeper, lease=lease)

        def _stop(signum, frame):
            self.stdout.write(self.style.WARNING('Stopping after the current pass...'))
            loop.stop()

        signal.signal(signal.SIGINT, _stop)
        signal.signal(signal.SIGTERM, _stop)

        self.stdout.write(
            self.style.NOTICE(f'Retention sweep running every {sweeper.options.cleanup_interval}')
        )
        loop.run()
        self.stdout.write(self.style.SUCCESS(f'Retention sweep stopped after {loop.passes} passes'))

    def _write_report(self, report):
        summary = (
            f"Expired: {report.expired}\n"
            f"  Orphans reaped: {report.orphans_reaped}\n"
            f"  Purged: {report.purged}\n"
            f"  Strays reaped: {report.strays_reaped}"
        )
        if report.ok:
            self.stdout.write(self.style.SUCCESS(f"Sweep complete:\n  {summary}"))
        else:
            self.stdout.write(
                self.style.ERROR(
                    f"Sweep finished with failures "
                    f"(phases: {', '.join(report.failed_phases) or 'none'}, "
                    f"records: {report.record_failures}):\n  {summary}"
                )
            )
