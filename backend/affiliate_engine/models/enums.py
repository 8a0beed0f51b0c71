from enum import Enum

# Stored as strings with DB check constraints (native enums disabled for easier evolution).


class UserRoleEnum(str, Enum):
    USER = "user"
    ADMIN = "admin"


class AffiliateStatusEnum(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"


class AffiliateTierEnum(str, Enum):
    TOP = "TOP"
    SUB = "SUB"


class AttributionTypeEnum(str, Enum):
    USER_SIGNUP = "USER_SIGNUP"
    BUSINESS_SIGNUP = "BUSINESS_SIGNUP"


class AttributionSourceEnum(str, Enum):
    ORGANIC = "ORGANIC"
    MANUAL = "MANUAL"
    PROMO_CODE = "PROMO_CODE"


class PromoCodeStatusEnum(str, Enum):
    ACTIVE = "ACTIVE"
    DISABLED = "DISABLED"


class CommissionStatusEnum(str, Enum):
    PENDING = "PENDING"
    AVAILABLE = "AVAILABLE"
    PAID = "PAID"
    VOID = "VOID"


class CommissionEventTypeEnum(str, Enum):
    ORDER_PAID = "ORDER_PAID"
    INVOICE_PAID = "INVOICE_PAID"
    SIGNUP_BONUS = "SIGNUP_BONUS"
    MANUAL_ADJUSTMENT = "MANUAL_ADJUSTMENT"


class PayoutStatusEnum(str, Enum):
    SENT = "SENT"
    FAILED = "FAILED"


# Entries in these states can still be swept by a payout run once the
# holdback has elapsed.
PAYABLE_COMMISSION_STATUSES = (
    CommissionStatusEnum.PENDING.value,
    CommissionStatusEnum.AVAILABLE.value,
)
