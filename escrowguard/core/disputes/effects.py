"""Follow-up work queued by dispute actions and sent after commit.

Engines record what should happen next; the caller commits its
transaction first and only then calls ``dispatch``. Nothing here may fail
the action that produced it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from escrowguard.common.logging import get_logger

logger = get_logger("disputes.effects")


def enqueue(task_name: str, *args: Any) -> None:
    from escrowguard.tasks import dispute_tasks

    getattr(dispute_tasks, task_name).delay(*args)


@dataclass
class SideEffects:
    notifications: list[tuple[str, str, dict[str, Any]]] = field(default_factory=list)
    option_requests: list[str] = field(default_factory=list)
    decision_requests: list[str] = field(default_factory=list)
    settlements: list[str] = field(default_factory=list)
    fee_charges: list[str] = field(default_factory=list)

    def notify(self, dispute_id, category: str, **context: Any) -> None:
        self.notifications.append((str(dispute_id), category, context))

    def request_options(self, dispute_id) -> None:
        self.option_requests.append(str(dispute_id))

    def request_decision(self, dispute_id) -> None:
        self.decision_requests.append(str(dispute_id))

    def settle(self, intent_id) -> None:
        self.settlements.append(str(intent_id))

    def collect_fee(self, charge_id) -> None:
        self.fee_charges.append(str(charge_id))

    def merge(self, other: "SideEffects") -> None:
        self.notifications.extend(other.notifications)
        self.option_requests.extend(other.option_requests)
        self.decision_requests.extend(other.decision_requests)
        self.settlements.extend(other.settlements)
        self.fee_charges.extend(other.fee_charges)

    def __bool__(self) -> bool:
        return bool(
            self.notifications
            or self.option_requests
            or self.decision_requests
            or self.settlements
            or self.fee_charges
        )

    def dispatch(self) -> None:
        calls: list[tuple[str, tuple]] = []
        calls += [("execute_settlement", (i,)) for i in self.settlements]
        calls += [("collect_fee", (c,)) for c in self.fee_charges]
        calls += [("generate_mediation_options", (d,)) for d in self.option_requests]
        calls += [("issue_binding_decision", (d,)) for d in self.decision_requests]
        calls += [
            ("send_dispute_notification", (d, category, context))
            for d, category, context in self.notifications
        ]

        for task_name, args in calls:
            try:
                enqueue(task_name, *args)
            except Exception as e:
                logger.error("Failed to enqueue %s%s: %s", task_name, args, e)
