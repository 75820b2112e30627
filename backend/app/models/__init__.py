from .base import Base
from .customer import Customer  # noqa: F401
from .fleet import (  # noqa: F401
    Vehicle,
    VehicleStatus,
    Driver,
    DriverStatus,
)
from .consignment import (  # noqa: F401
    Consignment,
    ConsignmentStatus,
    PaymentStatus,
    PartySnapshot,
)
from .billing import (  # noqa: F401
    FreightBill,
    FreightBillLine,
    BillAdjustment,
    BillStatus,
    AdjustmentType,
)
from .audit import AuditLog  # noqa: F401
