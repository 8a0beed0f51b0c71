from .users import User
from .affiliates import Affiliate, Attribution, PromoCode, CommissionLedger, AffiliatePayout
from .job_locks import JobLock
