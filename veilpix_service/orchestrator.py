"""Generation pipeline: gate, upload, build, execute, normalize, convert.

One ``GenerationOrchestrator`` exists per (kind, provider). Uploaded assets
are removed in a single ``finally`` block; usage is only committed after a
result has been produced, and a failure is logged with the stage it came
from. Nothing is retried here.
"""

from __future__ import annotations

import logging
from functools import partial
from typing import Any, Callable

from .adapters import ProviderAdapter, build_adapter
from .asset_store import TemporaryAssetStore
from .conversion import fetch_image_as_inline
from .errors import (
    STAGE_BUILD,
    STAGE_CONVERT,
    STAGE_EXECUTE,
    STAGE_NORMALIZE,
    STAGE_UPLOAD,
    STAGE_VALIDATE,
    GenerationError,
    RequestBuildError,
)
from .gemini_client import GeminiClient
from .job_client import KieJobClient
from .ledger import CreditLedger
from .models import Caller, GenerationIntent, GenerationKind, GenerationOutcome, RequestContext, UploadedAsset
from .settings import PROVIDER_GEMINI, PROVIDERS, ProviderSettings, ServiceSettings
from .transport import HttpTransport
from .usage_gate import UsageGate

logger = logging.getLogger("veilpix-service.orchestrator")

Executor = Callable[[Any], Any]


class GenerationOrchestrator:
    def __init__(
        self,
        kind: GenerationKind,
        provider: ProviderSettings,
        adapter: ProviderAdapter,
        executor: Executor,
        gate: UsageGate,
        ledger: CreditLedger,
        asset_store: TemporaryAssetStore,
        transport: HttpTransport,
    ):
        self.kind = kind
        self.provider = provider
        self.adapter = adapter
        self.executor = executor
        self.gate = gate
        self.ledger = ledger
        self.asset_store = asset_store
        self.transport = transport

    def __repr__(self) -> str:
        return f"GenerationOrchestrator({self.kind.value}, {self.provider.provider_id})"

    def run(self, caller: Caller, intent: GenerationIntent) -> GenerationOutcome:
        if intent.kind is not self.kind:
            raise RequestBuildError(f"{self!r} cannot run a {intent.kind.value} request")

        context = RequestContext(caller=caller, provider_id=self.provider.provider_id, intent=intent)
        decision = self.gate.check(caller, self.provider)
        if not decision.allowed:
            logger.info(
                "%s denied for %s: %s",
                self,
                caller.owner_tag,
                type(decision.denial).__name__,
            )
            raise decision.denial
        context = context.with_decision(decision)

        stage = STAGE_VALIDATE
        uploads: tuple[UploadedAsset, ...] = ()
        try:
            self.adapter.validate_intent(intent)

            if self.adapter.needs_upload:
                stage = STAGE_UPLOAD
                uploads = self.asset_store.upload_many(intent.images, caller.owner_tag)
                context = context.with_uploads(uploads)
                image_refs: list[Any] = [asset.url for asset in uploads]
            else:
                image_refs = list(intent.images)

            stage = STAGE_BUILD
            request = self.adapter.build_request(intent, image_refs)

            stage = STAGE_EXECUTE
            payload = self.executor(request)

            stage = STAGE_NORMALIZE
            result = self.adapter.normalize_response(payload)

            if result.needs_conversion:
                stage = STAGE_CONVERT
                result = fetch_image_as_inline(result.url, self.transport)
        except GenerationError as exc:
            self._record_failure(context, exc.stage, exc)
            raise
        except Exception as exc:
            error = GenerationError(f"Unexpected error during {stage}: {exc}", stage=stage)
            logger.exception("%s failed unexpectedly at stage %s", self, stage)
            self._record_failure(context, stage, error)
            raise error from exc
        finally:
            if uploads:
                self.asset_store.delete_many(asset.key for asset in uploads)

        processing_ms = context.elapsed_ms()
        ledger_outcome = self.ledger.commit(context, self.provider, processing_ms)
        logger.info(
            "%s succeeded for %s in %sms (ledger committed=%s)",
            self,
            caller.owner_tag,
            processing_ms,
            ledger_outcome.committed,
        )

        if caller.is_authenticated:
            usage = {
                "type": "authenticated",
                "creditsUsed": ledger_outcome.credits_deducted,
                "creditsRemaining": ledger_outcome.remaining,
            }
        else:
            usage = {
                "type": "anonymous",
                "used": (decision.used or 0) + (1 if ledger_outcome.committed else 0),
                "limit": decision.limit,
                "remaining": ledger_outcome.remaining,
            }
        usage["ledgerCommitted"] = ledger_outcome.committed

        return GenerationOutcome(
            image=result,
            processing_time_ms=processing_ms,
            credits_used=ledger_outcome.credits_deducted,
            credits_remaining=ledger_outcome.remaining if caller.is_authenticated else None,
            usage=usage,
        )

    def _record_failure(self, context: RequestContext, stage: str, error: Exception) -> None:
        logger.error("%s failed at stage %s for %s: %s", self, stage, context.caller.owner_tag, error)
        self.ledger.record_failure(context, stage, error, context.elapsed_ms())


def build_executor(
    provider_id: str,
    adapter: ProviderAdapter,
    settings: ServiceSettings,
    gemini_client: GeminiClient,
    job_client: KieJobClient,
) -> Executor:
    if provider_id == PROVIDER_GEMINI:
        return gemini_client.generate
    return partial(job_client.run, settings.provider(provider_id), adapter.model)


def build_orchestrators(
    settings: ServiceSettings,
    gate: UsageGate,
    ledger: CreditLedger,
    asset_store: TemporaryAssetStore,
    transport: HttpTransport,
    gemini_client: GeminiClient,
    job_client: KieJobClient,
) -> dict[tuple[GenerationKind, str], GenerationOrchestrator]:
    orchestrators: dict[tuple[GenerationKind, str], GenerationOrchestrator] = {}
    for provider_id in PROVIDERS:
        adapter = build_adapter(provider_id, settings)
        executor = build_executor(provider_id, adapter, settings, gemini_client, job_client)
        for kind in GenerationKind:
            orchestrators[(kind, provider_id)] = GenerationOrchestrator(
                kind=kind,
                provider=settings.provider(provider_id),
                adapter=adapter,
                executor=executor,
                gate=gate,
                ledger=ledger,
                asset_store=asset_store,
                transport=transport,
            )
    return orchestrators
