"""Kie.ai job client: submit a task, then poll it to a terminal state.

Used by the providers with an asynchronous execution model (SeeDream and
Nano Banana Pro). The wait between polls is a plain ``sleep``; the attempt
budget comes from the provider settings, so a slow provider can be given a
longer window than a fast one.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable
from urllib.parse import quote

from .errors import NormalizationError, ProviderFailedError, ProviderTimeoutError
from .models import ProviderTask, TaskState
from .settings import KieSettings, ProviderSettings
from .transport import HttpTransport, InvalidJSONError, TransportError, compute_backoff_seconds

logger = logging.getLogger("veilpix-service.jobs")

CREATE_TASK_PATH = "/api/v1/jobs/createTask"
RECORD_INFO_PATH = "/api/v1/jobs/recordInfo"


class KieJobClient:
    def __init__(
        self,
        kie: KieSettings,
        transport: HttpTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.kie = kie
        self.transport = transport or HttpTransport(timeout_ms=kie.http_timeout_ms)
        self._sleep = sleep

    def _headers(self, provider: ProviderSettings) -> dict[str, str]:
        if not self.kie.api_key:
            raise ProviderFailedError(provider.label, "KIE_API_KEY is not configured")
        return {"Authorization": f"Bearer {self.kie.api_key}"}

    def submit(self, provider: ProviderSettings, model: str, task_input: dict[str, Any]) -> ProviderTask:
        headers = self._headers(provider)
        try:
            result = self.transport.request_json(
                "POST",
                f"{self.kie.base_url}{CREATE_TASK_PATH}",
                headers=headers,
                payload={"model": model, "input": task_input},
            )
        except InvalidJSONError as exc:
            raise NormalizationError(provider.label, f"createTask returned an unparseable body: {exc}") from exc
        except TransportError as exc:
            raise ProviderFailedError(provider.label, f"task creation failed: {exc}") from exc

        if not isinstance(result, dict):
            raise NormalizationError(provider.label, "createTask returned a non-object body")
        if result.get("code") != 200:
            message = result.get("msg") or result.get("message") or "Unknown error"
            raise ProviderFailedError(provider.label, f"task creation rejected: {message}", code=str(result.get("code")))

        data = result.get("data") or {}
        task_id = data.get("taskId") if isinstance(data, dict) else None
        if not task_id:
            raise NormalizationError(provider.label, "createTask response missing data.taskId")

        logger.info("%s task created: %s", provider.label, task_id)
        return ProviderTask(provider_id=provider.provider_id, task_id=str(task_id))

    def poll(self, provider: ProviderSettings, task: ProviderTask) -> dict[str, Any]:
        """Fetch the task record once and advance ``task`` to the reported state."""
        headers = self._headers(provider)
        result = self.transport.request_json(
            "GET",
            f"{self.kie.base_url}{RECORD_INFO_PATH}?taskId={quote(task.task_id)}",
            headers=headers,
        )
        task.attempts += 1
        task.last_polled_at = time.time()

        if not isinstance(result, dict):
            raise NormalizationError(provider.label, "recordInfo returned a non-object body")
        if result.get("code") != 200:
            message = result.get("msg") or result.get("message") or "Unknown error"
            raise ProviderFailedError(provider.label, f"task query failed: {message}", code=str(result.get("code")))

        task_data = result.get("data")
        if not isinstance(task_data, dict):
            raise NormalizationError(provider.label, "recordInfo response missing data")
        raw_state = str(task_data.get("state") or "").strip().lower()
        try:
            state = TaskState(raw_state)
        except ValueError:
            raise NormalizationError(provider.label, f"unknown task state '{raw_state}'") from None
        if state is TaskState.SUBMITTED:
            state = TaskState.WAITING
        task.advance(state)
        return task_data

    def wait(self, provider: ProviderSettings, task: ProviderTask) -> dict[str, Any]:
        """Poll until success, failure or the attempt budget runs out.

        Returns the parsed ``resultJson`` payload on success. A transient HTTP
        error (429/5xx, network) uses up one attempt and backs off; anything
        else is raised straight away.
        """
        consecutive_errors = 0
        for attempt in range(provider.max_attempts):
            last_attempt = attempt == provider.max_attempts - 1
            try:
                task_data = self.poll(provider, task)
            except InvalidJSONError as exc:
                raise NormalizationError(provider.label, f"recordInfo returned an unparseable body: {exc}") from exc
            except TransportError as exc:
                if not exc.is_transient:
                    raise ProviderFailedError(provider.label, f"task status check failed: {exc}") from exc
                delay = max(provider.poll_interval_seconds, compute_backoff_seconds(consecutive_errors, exc.retry_after))
                consecutive_errors += 1
                logger.warning(
                    "%s task %s status check failed (attempt %s/%s), retrying in %.1fs: %s",
                    provider.label,
                    task.task_id,
                    attempt + 1,
                    provider.max_attempts,
                    delay,
                    exc,
                )
                if not last_attempt:
                    self._sleep(delay)
                continue

            consecutive_errors = 0
            if attempt % provider.progress_log_every == 0:
                elapsed = int(time.time() - task.created_at)
                logger.info("%s task %s status: %s (%ss elapsed)", provider.label, task.task_id, task.state.value, elapsed)

            if task.state is TaskState.SUCCESS:
                logger.info("%s task %s completed after %s polls", provider.label, task.task_id, task.attempts)
                return self._parse_result(provider, task_data)

            if task.state is TaskState.FAIL:
                message = task_data.get("failMsg") or task_data.get("failCode") or "Unknown error"
                fail_code = task_data.get("failCode")
                logger.error("%s task %s failed: %s", provider.label, task.task_id, message)
                raise ProviderFailedError(provider.label, str(message), code=str(fail_code) if fail_code else None)

            if not last_attempt:
                self._sleep(provider.poll_interval_seconds)

        logger.error(
            "%s task %s timed out in state %s after %s attempts",
            provider.label,
            task.task_id,
            task.state.value,
            provider.max_attempts,
        )
        raise ProviderTimeoutError(provider.label, task.task_id, provider.max_attempts)

    def run(self, provider: ProviderSettings, model: str, task_input: dict[str, Any]) -> dict[str, Any]:
        task = self.submit(provider, model, task_input)
        return self.wait(provider, task)

    @staticmethod
    def _parse_result(provider: ProviderSettings, task_data: dict[str, Any]) -> dict[str, Any]:
        raw = task_data.get("resultJson")
        if isinstance(raw, dict):
            return raw
        if not raw:
            raise NormalizationError(provider.label, "successful task has no resultJson")
        try:
            parsed = json.loads(raw)
        except (TypeError, json.JSONDecodeError) as exc:
            raise NormalizationError(provider.label, f"resultJson is not valid JSON: {exc}") from exc
        if not isinstance(parsed, dict):
            raise NormalizationError(provider.label, "resultJson is not an object")
        return parsed
