"""Credential document verification via OCR and rule-based validation.

Each supported :class:`DocumentType` has an immutable rule set:

+----------------------+----------------------------------------------+
| Check                | Passes when                                  |
+----------------------+----------------------------------------------+
| Keywords             | at least ONE required keyword is present     |
| Issue date           | a 19xx / 20xx year appears                   |
| Institution          | an issuing-body word appears                 |
| Credential           | a credential-title word appears              |
+----------------------+----------------------------------------------+

All four checks run against the lower-cased OCR text and all must pass.
Metadata is extracted separately from the original-case text and is
best-effort: it may be partially filled even when validation fails.

A batch of documents is verified when ANY document verifies -- one
valid credential is sufficient proof.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Final

import structlog

from src.models.verification import (
    DocumentBatchVerdict,
    DocumentMetadata,
    DocumentType,
    DocumentVerdict,
)

if TYPE_CHECKING:
    from src.services.verification.ocr import OCREngine

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Rule table
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class DocumentRules:
    required_keywords: tuple[str, ...]
    date_pattern: re.Pattern[str]
    institution_pattern: re.Pattern[str]
    credential_pattern: re.Pattern[str]


_YEAR_RE: Final = re.compile(r"\b(19|20)\d{2}\b")

DOCUMENT_RULES: Final[dict[DocumentType, DocumentRules]] = {
    DocumentType.DEGREE: DocumentRules(
        required_keywords=("degree", "university", "graduate", "bachelor", "master", "phd"),
        date_pattern=_YEAR_RE,
        institution_pattern=re.compile(r"\b(University|Institute|College)\b", re.IGNORECASE),
        credential_pattern=re.compile(r"\b(Bachelor|Master|Doctor|Ph\.D\.|MBA)\b", re.IGNORECASE),
    ),
    DocumentType.CERTIFICATE: DocumentRules(
        required_keywords=("certificate", "certification", "certified", "complete"),
        date_pattern=_YEAR_RE,
        institution_pattern=re.compile(r"\b(Institution|Authority|Board|Organization)\b", re.IGNORECASE),
        credential_pattern=re.compile(r"\b(Professional|Certified|Licensed|Accredited)\b", re.IGNORECASE),
    ),
    DocumentType.PROFESSIONAL_LICENSE: DocumentRules(
        required_keywords=("license", "licensed", "professional", "authorized"),
        date_pattern=_YEAR_RE,
        institution_pattern=re.compile(r"\b(Board|Authority|Council|Association)\b", re.IGNORECASE),
        credential_pattern=re.compile(r"\b(License|Registration|Membership|Number)\b", re.IGNORECASE),
    ),
}

# Failure labels
KEYWORDS_MISSING: Final[str] = "Required keywords not found"
DATE_MISSING: Final[str] = "Valid date not found"
INSTITUTION_MISSING: Final[str] = "Institution name not found"
CREDENTIAL_MISSING: Final[str] = "Credential information not found"
INVALID_TYPE: Final[str] = "Invalid document type"
EXTRACTION_FAILED: Final[str] = "Text extraction failed"
LOW_CONFIDENCE: Final[str] = "OCR confidence below threshold"


def resolve_document_type(declared: DocumentType | str) -> DocumentType | None:
    """Map a declared type onto the rule table; *None* when unsupported."""
    if isinstance(declared, DocumentType):
        return declared
    normalised = declared.strip().lower().replace("-", "_").replace(" ", "_")
    if normalised == "professionallicense":
        normalised = DocumentType.PROFESSIONAL_LICENSE.value
    try:
        return DocumentType(normalised)
    except ValueError:
        return None


def validate_text(text: str, rules: DocumentRules) -> list[str]:
    """Return the failure reasons for lower-cased *text* (empty = valid)."""
    reasons: list[str] = []
    if not any(keyword in text for keyword in rules.required_keywords):
        reasons.append(KEYWORDS_MISSING)
    if not rules.date_pattern.search(text):
        reasons.append(DATE_MISSING)
    if not rules.institution_pattern.search(text):
        reasons.append(INSTITUTION_MISSING)
    if not rules.credential_pattern.search(text):
        reasons.append(CREDENTIAL_MISSING)
    return reasons


def extract_metadata(text: str, rules: DocumentRules) -> DocumentMetadata:
    date = rules.date_pattern.search(text)
    institution = rules.institution_pattern.search(text)
    credential = rules.credential_pattern.search(text)
    return DocumentMetadata(
        issue_date=date.group(0) if date else None,
        institution=institution.group(0) if institution else None,
        credential=credential.group(0) if credential else None,
    )


# ---------------------------------------------------------------------------
# DocumentVerifier
# ---------------------------------------------------------------------------


class DocumentVerifier:
    """OCR-extract and validate uploaded credential documents.

    Parameters
    ----------
    ocr:
        Text extraction engine.
    min_confidence:
        Optional OCR confidence floor in ``[0, 1]``.  When *None* the
        confidence is reported but never gates the verdict.
    """

    def __init__(self, ocr: OCREngine, *, min_confidence: float | None = None) -> None:
        self._ocr = ocr
        self._min_confidence = min_confidence

    async def verify(self, document: bytes, declared_type: DocumentType | str) -> DocumentVerdict:
        document_type = resolve_document_type(declared_type)
        type_label = document_type.value if document_type else str(declared_type)

        if document_type is None:
            logger.info("documents.invalid_type", declared_type=type_label)
            return DocumentVerdict(
                document_type=type_label,
                verified=False,
                failure_reasons=[INVALID_TYPE],
            )

        try:
            ocr_result = await self._ocr.extract_text(document)
        except Exception as exc:
            logger.error(
                "documents.ocr_failed",
                document_type=type_label,
                size_bytes=len(document),
                error=str(exc),
            )
            return DocumentVerdict(
                document_type=type_label,
                verified=False,
                failure_reasons=[EXTRACTION_FAILED],
            )

        rules = DOCUMENT_RULES[document_type]
        reasons = validate_text(ocr_result.text.lower(), rules)
        if self._min_confidence is not None and ocr_result.confidence < self._min_confidence:
            reasons.append(LOW_CONFIDENCE)

        verdict = DocumentVerdict(
            document_type=type_label,
            verified=not reasons,
            failure_reasons=reasons,
            metadata=extract_metadata(ocr_result.text, rules),
            confidence=ocr_result.confidence,
        )

        logger.info(
            "documents.verified",
            document_type=type_label,
            verified=verdict.verified,
            reasons=reasons,
            confidence=round(ocr_result.confidence, 3),
        )
        return verdict

    async def validate_multiple(
        self,
        documents: list[tuple[bytes, DocumentType | str]],
    ) -> DocumentBatchVerdict:
        """Verify each document independently; results keep input order."""
        if not documents:
            return DocumentBatchVerdict(verified=False, results=[])

        results = await asyncio.gather(
            *(self.verify(content, declared) for content, declared in documents)
        )
        batch = DocumentBatchVerdict.from_results(list(results))

        logger.info(
            "documents.batch_verified",
            total=len(results),
            verified_count=sum(r.verified for r in results),
            verified=batch.verified,
        )
        return batch
