from .users import get_user, get_user_by_email, create_user
from .affiliates import (
    create_affiliate,
    get_affiliate,
    get_affiliate_by_code,
    get_affiliate_for_user,
    list_attributions,
)
from .promo_codes import create_promo_code, get_promo_code, get_promo_code_by_code
from .commissions import (
    create_commission_entry,
    get_commission_by_event,
    select_payable_entries,
    mark_entries_paid,
)
from .job_locks import try_acquire_lock, release_lock
