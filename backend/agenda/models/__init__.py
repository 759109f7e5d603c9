from agenda.models.appointment import Appointment
from agenda.models.chain import RepetitionChain
from agenda.models.job import Job
from agenda.models.owner import Owner
from agenda.models.package_order import PackageOrder, SessionConsumption
from agenda.models.pending_order import PendingOrder
from agenda.models.warning import RepetitionWarning

__all__ = [
    "Appointment",
    "Job",
    "Owner",
    "PackageOrder",
    "PendingOrder",
    "RepetitionChain",
    "RepetitionWarning",
    "SessionConsumption",
]
