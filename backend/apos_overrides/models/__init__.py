from .auth import User, SessionToken
from .rules import ThresholdRule, RuleApprovalLevel, RuleException
from .requests import ApprovalRequest, CounterOffer
from .credentials import ManagerCredential
from .delegations import Delegation
from .audit import OverrideAuditEntry

__all__ = [
    'User', 'SessionToken',
    'ThresholdRule', 'RuleApprovalLevel', 'RuleException',
    'ApprovalRequest', 'CounterOffer',
    'ManagerCredential',
    'Delegation',
    'OverrideAuditEntry',
]
