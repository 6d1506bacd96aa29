"""
Human approval gate.

Every signing and broadcasting step waits for an explicit affirmative from a
human. The gate is fail-closed: anything other than the affirmative boolean
field set to True (timeouts, malformed or missing responses, channel errors)
is a decline. It keeps no state between requests.
"""

from __future__ import annotations

import asyncio
import threading
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

import typer
from loguru import logger

from midlanchor.constants import DEFAULT_APPROVAL_TIMEOUT
from midlanchor.models import ApprovalDecision, ApprovalScope

# Affirmative field in the elicitation form for each scope
AFFIRMATIVE_FIELDS = {
    ApprovalScope.SIGN: "approved",
    ApprovalScope.BROADCAST: "confirm",
}


def approval_schema(scope: ApprovalScope) -> dict[str, Any]:
    field_name = AFFIRMATIVE_FIELDS[scope]
    title = "Sign transaction" if scope == ApprovalScope.SIGN else "Broadcast transaction"
    return {
        "type": "object",
        "properties": {
            field_name: {
                "type": "boolean",
                "title": title,
                "default": False,
            }
        },
        "required": [field_name],
    }


class ApprovalChannel(ABC):
    """A way to ask a human a yes/no question with a structured answer."""

    @abstractmethod
    async def elicit(self, message: str, requested_schema: dict[str, Any]) -> Any:
        """Return the structured response content, or None if there was no answer."""


class CallbackChannel(ApprovalChannel):
    """
    Channel backed by an async request callable such as an MCP session's
    ``send_request``. The callable receives an ``elicitation/create`` request
    and returns ``{"action": "accept" | "decline" | "cancel", "content": {...}}``.
    """

    def __init__(self, send_request: Callable[[dict[str, Any]], Awaitable[Any]]):
        self._send_request = send_request

    async def elicit(self, message: str, requested_schema: dict[str, Any]) -> Any:
        response = await self._send_request(
            {
                "method": "elicitation/create",
                "params": {
                    "mode": "form",
                    "message": message,
                    "requestedSchema": requested_schema,
                },
            }
        )
        if not isinstance(response, dict) or response.get("action") != "accept":
            return None
        return response.get("content")


class ConsoleChannel(ApprovalChannel):
    """
    Interactive terminal prompt.

    The prompt runs in a daemon thread that nothing joins: after the gate
    times out the thread stays blocked on stdin, but it does not keep the
    process alive.
    """

    async def elicit(self, message: str, requested_schema: dict[str, Any]) -> Any:
        field_name = requested_schema["required"][0]
        loop = asyncio.get_running_loop()
        answer: asyncio.Future[bool] = loop.create_future()

        def settle(result: bool | None, error: Exception | None) -> None:
            # already cancelled when the gate gave up
            if answer.done():
                return
            if error is not None:
                answer.set_exception(error)
            else:
                answer.set_result(bool(result))

        def prompt() -> None:
            result, error = None, None
            try:
                result = typer.confirm(f"{message}\nProceed?", default=False)
            except Exception as e:
                error = e
            if not loop.is_closed():
                loop.call_soon_threadsafe(settle, result, error)

        threading.Thread(target=prompt, name="approval-prompt", daemon=True).start()
        return {field_name: await answer}


class DenyAllChannel(ApprovalChannel):
    """Declines everything. Used when no human is reachable."""

    async def elicit(self, message: str, requested_schema: dict[str, Any]) -> Any:
        return None


class ApprovalGate:
    def __init__(
        self,
        channel: ApprovalChannel | None,
        timeout: float = DEFAULT_APPROVAL_TIMEOUT,
    ):
        self.channel = channel
        self.timeout = timeout

    async def request(self, scope: ApprovalScope, message: str, subject: str) -> ApprovalDecision:
        """
        Ask for approval of ``subject`` (the txid being signed or broadcast).

        Never raises for a missing or bad answer; that is a Declined decision.
        Cancellation of the calling task is propagated.
        """
        field_name = AFFIRMATIVE_FIELDS[scope]

        def declined(reason: str) -> ApprovalDecision:
            logger.warning(f"Approval for {scope.value} of {subject} declined: {reason}")
            return ApprovalDecision(approved=False, scope=scope, subject=subject, reason=reason)

        if self.channel is None:
            return declined("no approval channel available")

        logger.info(f"Requesting {scope.value} approval for {subject}")
        try:
            response = await asyncio.wait_for(
                self.channel.elicit(message, approval_schema(scope)), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            return declined(f"no response within {self.timeout:.0f}s")
        except asyncio.CancelledError:
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                logger.warning(f"Approval for {scope.value} of {subject} cancelled")
                raise
            return declined("approval request was cancelled by the channel")
        except Exception as e:
            return declined(f"approval channel failed: {e}")

        if not isinstance(response, dict):
            return declined("no structured response")
        if response.get(field_name) is not True:
            return declined(f"'{field_name}' was not confirmed")

        logger.info(f"Approval for {scope.value} of {subject} granted")
        return ApprovalDecision(approved=True, scope=scope, subject=subject)
