"""
Action registry

Maps action names to typed handler functions. Capability metadata (group name + description) lives in plain
`ActionGroup` records; each action also declares the message type it serves so the backend can route a task
description to it without any runtime discovery
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from .tasks import TaskRequest, TaskState


log = logging.getLogger("actions")


# ---------- Status reporting ----------
class StatusCallback:
    """
    Receives progress reports from a running action

    Handlers always get an instance; use `NoopStatusCallback` when nobody listens
    """
    def send_status(self, message: str, state: TaskState) -> None:
        raise NotImplementedError


class NoopStatusCallback(StatusCallback):
    def send_status(self, message: str, state: TaskState) -> None:
        pass


ActionHandler = Callable[[TaskRequest, StatusCallback], str]


@dataclass(frozen=True)
class ActionGroup:
    name: str
    description: str


@dataclass(frozen=True)
class Action:
    name: str
    description: str
    group: ActionGroup
    message_type: str
    handler: ActionHandler

    def invoke(self, request: TaskRequest, callback: StatusCallback) -> str:
        return self.handler(request, callback)


class ActionRegistry:
    """
    Thread-safe name -> action mapping

    One action per message type; registering a second action for the same name or message type is an error
    """
    def __init__(self):
        self._lock = threading.Lock()
        self._by_name: Dict[str, Action] = {}
        self._by_message_type: Dict[str, Action] = {}

    def register(self, action: Action) -> Action:
        with self._lock:
            if action.name in self._by_name:
                raise ValueError(f"Action already registered: {action.name}")
            if action.message_type in self._by_message_type:
                raise ValueError(f"Message type {action.message_type} already served by {self._by_message_type[action.message_type].name}")
            self._by_name[action.name] = action
            self._by_message_type[action.message_type] = action
        log.debug(f"Registered action {action.name} ({action.group.name}) for {action.message_type}")
        return action

    def get(self, name: str) -> Optional[Action]:
        with self._lock:
            return self._by_name.get(name)

    def for_message_type(self, message_type: str) -> Optional[Action]:
        with self._lock:
            return self._by_message_type.get(message_type)

    def groups(self) -> List[ActionGroup]:
        with self._lock:
            seen: Dict[str, ActionGroup] = {}
            for action in self._by_name.values():
                seen.setdefault(action.group.name, action.group)
            return list(seen.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_name)


# ---------- Domain actions ----------
ORDER_SUPPORT = ActionGroup("order support", "actions related to order support")
PAYMENT_SUPPORT = ActionGroup("payment support", "actions related to payment processing")
ALERT_SUPPORT = ActionGroup("alert support", "actions related to system alerts")


def _field(request: TaskRequest, name: str) -> str:
    value = request.payload.get(name)
    return "" if value is None else str(value)


def _entity_id(request: TaskRequest) -> str:
    # Alert payloads carry no id; the record key identifies them
    return _field(request, "id") or request.key


def process_new_order(request: TaskRequest, callback: StatusCallback) -> str:
    order_id = _entity_id(request)
    log.info(f"Processing new order: {order_id}")
    result = f"Processed your order Order ID: {order_id}, Status: {_field(request, 'status')}, Amount: {_field(request, 'amount')}"
    callback.send_status(result, TaskState.COMPLETED)
    return result


def process_payment(request: TaskRequest, callback: StatusCallback) -> str:
    payment_id = _entity_id(request)
    log.info(f"Processing payment: {payment_id}")
    result = f"Processed payment ID: {payment_id}, Status: {_field(request, 'status')}, Amount: {_field(request, 'amount')}"
    callback.send_status(result, TaskState.COMPLETED)
    return result


def process_alert(request: TaskRequest, callback: StatusCallback) -> str:
    alert_id = _entity_id(request)
    log.info(f"Processing alert: {alert_id}")
    result = f"Processed alert ID: {alert_id}, Type: {_field(request, 'type')}, Severity: {_field(request, 'severity')}"
    callback.send_status(result, TaskState.COMPLETED)
    return result


def default_registry() -> ActionRegistry:
    """Registry with the order, payment and alert actions"""
    registry = ActionRegistry()
    registry.register(Action("processNewOrder", "Process a new order", ORDER_SUPPORT, "order-processing", process_new_order))
    registry.register(Action("processPayment", "Process a payment", PAYMENT_SUPPORT, "payment-processing", process_payment))
    registry.register(Action("processAlert", "Process system alert", ALERT_SUPPORT, "system-alert", process_alert))
    return registry
