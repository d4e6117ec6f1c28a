from enum import Enum

class UserType(str, Enum):
    student = "student"
    mentor = "mentor"

class Role(str, Enum):
    student = "student"
    mentor = "mentor"

    @property
    def own_column(self) -> str:
        return "student_id" if self is Role.student else "mentor_id"

    @property
    def partner_column(self) -> str:
        return "mentor_id" if self is Role.student else "student_id"

class ConnectionStatus(str, Enum):
    pending = "pending"
    accepted = "accepted"
    rejected = "rejected"

ACTIVE_STATUSES = (ConnectionStatus.pending.value, ConnectionStatus.accepted.value)

class Decision(str, Enum):
    accept = "accept"
    reject = "reject"

    @property
    def target_status(self) -> ConnectionStatus:
        if self is Decision.accept:
            return ConnectionStatus.accepted
        return ConnectionStatus.rejected

class DeliveryState(str, Enum):
    pending = "pending"
    sent = "sent"
    failed = "failed"
