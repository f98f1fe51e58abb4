from app.models.account import Account
from app.models.plan import Plan
from app.models.entitlement import Entitlement
from app.models.payment_request import PaymentRequest
from app.models.usage_counter import UsageCounter
