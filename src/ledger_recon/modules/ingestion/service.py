from __future__ import annotations

import time
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta

from sqlalchemy import update
from sqlalchemy.orm import Session

from ledger_recon.core.concurrency import CallLimiter
from ledger_recon.core.config import settings
from ledger_recon.core.db import SessionLocal
from ledger_recon.core.errors import ParseError
from ledger_recon.core.logging import get_logger, log_event, log_exception, monotonic_ms
from ledger_recon.core.storage import ObjectStorage, get_storage
from ledger_recon.modules.documents.models import DocumentStatus, RawDocument
from ledger_recon.modules.ingestion.classification import ClassificationStage
from ledger_recon.modules.ingestion.context import BatchContext
from ledger_recon.modules.ingestion.parsing import ParsedDocument, parse_document
from ledger_recon.modules.ingestion.providers import (
    CategoryClassificationProvider,
    OpenAICategoryClassifier,
    OpenAITransactionExtractor,
    OpenAIVendorNormalizer,
    TransactionExtractionProvider,
    VendorNormalizationProvider,
)
from ledger_recon.modules.ingestion.writer import LedgerWriter, WriteResult
from ledger_recon.modules.ledger.repository import update_document_status

logger = get_logger(__name__)


@dataclass
class IngestionResult:
    document_id: str
    status: str
    total_rows: int = 0
    created: int = 0
    reused: int = 0
    skipped: dict[str, int] = field(default_factory=dict)
    vendor_fallbacks: int = 0
    category_fallbacks: int = 0
    extraction_confidence: float | None = None
    error_message: str | None = None

    def as_dict(self) -> dict:
        return asdict(self)


class IngestionPipeline:
    """Parse -> resolve vendors -> classify -> write, for one document at a time.

    Providers are injected; the defaults call OpenAI using the configured key.
    """

    def __init__(
        self,
        *,
        normalizer: VendorNormalizationProvider | None = None,
        classifier: CategoryClassificationProvider | None = None,
        extractor: TransactionExtractionProvider | None = None,
        storage: ObjectStorage | None = None,
        session_factory: Callable[[], Session] = SessionLocal,
        max_concurrency: int | None = None,
    ) -> None:
        self.normalizer = normalizer or OpenAIVendorNormalizer()
        self.classifier = classifier or OpenAICategoryClassifier()
        self.extractor = extractor or OpenAITransactionExtractor()
        self.storage = storage
        self.session_factory = session_factory
        self.max_concurrency = int(max_concurrency or settings.provider_max_concurrency or 5)

    def ingest_document(self, *, document_id: str | uuid.UUID) -> IngestionResult | None:
        doc_uuid = document_id if isinstance(document_id, uuid.UUID) else uuid.UUID(document_id)
        with self.session_factory() as session:
            document = session.get(RawDocument, doc_uuid)
            if not document:
                return None
            if document.status == DocumentStatus.PROCESSED:
                return _result_from_document(document)
            if not _try_start_document_processing(session=session, document=document):
                log_event(
                    logger,
                    "ingest.skip.busy",
                    document_id=str(document.id),
                    status=document.status.value,
                )
                return None
            return self._run(session, document)

    def _run(self, session: Session, document: RawDocument) -> IngestionResult:
        start = time.monotonic()
        log_event(
            logger,
            "ingest.start",
            document_id=str(document.id),
            organization_id=str(document.organization_id),
            filename=document.filename,
            declared_type=document.declared_type.value,
            byte_size=document.byte_size,
        )
        ctx = BatchContext(organization_id=document.organization_id, document_id=document.id)

        try:
            body = (self.storage or get_storage()).get(key=document.storage_key)
            parsed = parse_document(
                body=body,
                declared_type=document.declared_type.value,
                filename=document.filename,
                content_type=document.content_type,
                extractor=self.extractor,
            )
            log_event(
                logger,
                "ingest.parse",
                document_id=str(document.id),
                kind=parsed.kind,
                layout=parsed.layout,
                rows=parsed.total_rows,
                transaction_rows=len(parsed.transaction_rows),
                summary_rows=len(parsed.summary_rows),
                unrecognized_rows=len(parsed.unrecognized_rows),
            )
            for row in parsed.unrecognized_rows:
                ctx.skip(row.reason)

            stage = ClassificationStage(
                normalizer=self.normalizer,
                classifier=self.classifier,
                limiter=CallLimiter(self.max_concurrency),
            )
            writer = LedgerWriter(session, stage=stage)
            if parsed.layout == "summary":
                written = writer.write_summaries(ctx, parsed.summary_rows)
            else:
                rows = parsed.transaction_rows
                if rows:
                    stage.run(ctx, rows)
                written = writer.write_transactions(ctx, rows)
        except ParseError as e:
            session.rollback()
            update_document_status(
                session,
                document=document,
                status=DocumentStatus.ERROR,
                summary="The document could not be read.",
                error_message=str(e),
                row_count=0,
                skip_counts={},
            )
            log_event(
                logger,
                "ingest.error",
                document_id=str(document.id),
                reason="parse_error",
                error=str(e),
                duration_ms=monotonic_ms(start),
            )
            return _result_from_document(document)
        except Exception as e:
            session.rollback()
            update_document_status(
                session,
                document=document,
                status=DocumentStatus.ERROR,
                error_message=f"Unexpected ingestion error: {e}",
                skip_counts=dict(ctx.stats.skipped),
            )
            log_exception(
                logger,
                "ingest.error",
                document_id=str(document.id),
                reason="unexpected",
                duration_ms=monotonic_ms(start),
            )
            raise

        summary = _summarize(parsed, written, ctx)
        if written.usable == 0:
            update_document_status(
                session,
                document=document,
                status=DocumentStatus.ERROR,
                summary=summary,
                error_message="No valid rows could be imported",
                row_count=parsed.total_rows,
                skip_counts=dict(ctx.stats.skipped),
            )
        else:
            ratio = written.usable / max(1, parsed.total_rows)
            update_document_status(
                session,
                document=document,
                status=DocumentStatus.PROCESSED,
                summary=summary,
                extraction_confidence=parsed.confidence * ratio,
                row_count=parsed.total_rows,
                skip_counts=dict(ctx.stats.skipped),
            )

        result = _result_from_document(document)
        result.created = written.created
        result.reused = written.reused
        result.vendor_fallbacks = ctx.stats.vendor_fallbacks
        result.category_fallbacks = ctx.stats.category_fallbacks
        log_event(
            logger,
            "ingest.finish",
            document_id=str(document.id),
            status=result.status,
            created=written.created,
            reused=written.reused,
            skipped=ctx.skipped_total,
            failures=len(ctx.failures),
            duration_ms=monotonic_ms(start),
        )
        return result


def _try_start_document_processing(*, session: Session, document: RawDocument) -> bool:
    stale_before = datetime.now(UTC) - timedelta(minutes=int(settings.processing_stale_minutes))
    result = session.execute(
        update(RawDocument)
        .where(
            RawDocument.id == document.id,
            (
                RawDocument.status.in_((DocumentStatus.UPLOADED, DocumentStatus.ERROR))
                | (
                    (RawDocument.status == DocumentStatus.PROCESSING)
                    & (RawDocument.updated_at < stale_before)
                )
            ),
        )
        .values(status=DocumentStatus.PROCESSING, error_message=None)
    )
    if not result.rowcount:
        return False
    session.commit()
    session.refresh(document)
    return True


def _summarize(parsed: ParsedDocument, written: WriteResult, ctx: BatchContext) -> str:
    noun = "monthly metrics" if parsed.layout == "summary" else "transactions"
    parts = [f"Imported {written.created} {noun} from {parsed.total_rows} rows."]
    if written.reused:
        parts.append(f"{written.reused} rows were already imported.")
    skipped = {k: v for k, v in ctx.stats.skipped.items() if k != "already_imported"}
    if skipped:
        detail = ", ".join(f"{k}: {v}" for k, v in sorted(skipped.items()))
        parts.append(f"Skipped {sum(skipped.values())} ({detail}).")
    if ctx.stats.vendor_fallbacks or ctx.stats.category_fallbacks:
        parts.append(
            f"Fallbacks used for {ctx.stats.vendor_fallbacks} vendors and "
            f"{ctx.stats.category_fallbacks} categories."
        )
    return " ".join(parts)


def _result_from_document(document: RawDocument) -> IngestionResult:
    return IngestionResult(
        document_id=str(document.id),
        status=document.status.value,
        total_rows=document.row_count or 0,
        skipped=dict(document.skip_counts or {}),
        extraction_confidence=document.extraction_confidence,
        error_message=document.error_message,
    )


def ingest_document(*, document_id: str) -> IngestionResult | None:
    return IngestionPipeline().ingest_document(document_id=document_id)
