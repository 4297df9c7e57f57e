from django.core.management.base import BaseCommand
from rides.models import CostAuditRecord, Ride, RideStatus, ServiceType
from services.pricing.audit import audit_ride_costs
import logging

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Audit task costs of completed errand rides and record any defects."

    def add_arguments(self, parser):
        parser.add_argument(
            "--ride",
            type=int,
            help="Audit only this ride.",
        )
        parser.add_argument(
            "--include-audited",
            action="store_true",
            help="Also audit rides that already have an unresolved audit record.",
        )

    def handle(self, *args, **options):
        rides = Ride.objects.filter(service_type=ServiceType.ERRANDS, status=RideStatus.COMPLETED)
        if options["ride"]:
            rides = rides.filter(id=options["ride"])
        if not options["include_audited"]:
            audited = CostAuditRecord.objects.filter(resolved=False).values("ride_id")
            rides = rides.exclude(id__in=audited)

        checked = 0
        flagged = 0
        for ride in rides.iterator():
            checked += 1
            if audit_ride_costs(ride) is not None:
                flagged += 1

        logger.info("Cost audit checked %d ride(s), %d with defects", checked, flagged)
        style = self.style.WARNING if flagged else self.style.SUCCESS
        self.stdout.write(style(f"Audited {checked} completed errand ride(s); {flagged} with cost defects."))
