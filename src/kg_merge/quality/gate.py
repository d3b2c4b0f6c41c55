"""Quality gate: a merge run may only start for an approved transform.

Results are recorded once per transform. Approval is either automatic
(clean result above the auto-approve threshold) or an explicit
approve/reject call. With a records directory the gate persists each
transform's result and decision as YAML so CLI invocations share state.
"""

import logging
import threading
from pathlib import Path

import yaml

from kg_merge.errors import NotFoundError, QualityGateRejected, ValidationError
from kg_merge.quality.models import GateDecision, QualityConfig, QualityRecord, QualityResult

logger = logging.getLogger(__name__)


class QualityGate:
    """Tracks quality results and approval decisions per transform."""

    def __init__(self, config: QualityConfig | None = None, records_dir: Path | None = None) -> None:
        self.config = config or QualityConfig()
        self.records_dir = Path(records_dir) if records_dir else None
        self._records: dict[str, QualityRecord] = {}
        self._lock = threading.Lock()

    def record(self, transform_id: str, result: QualityResult) -> QualityRecord:
        """Store a transform's quality result, auto-approving when allowed.

        Raises:
            ValidationError: If a different result was already recorded
        """
        if result.transform_id and result.transform_id != transform_id:
            raise ValidationError(
                f"Result belongs to transform {result.transform_id}, not {transform_id}"
            )
        with self._lock:
            existing = self._load(transform_id)
            if existing is not None:
                if existing.result == result:
                    return existing
                raise ValidationError(f"Quality result for {transform_id} is already recorded")

            decision = None
            if (
                self.config.auto_approve
                and not result.requires_review
                and result.overall_score >= self.config.auto_approve_threshold
            ):
                decision = GateDecision(
                    transform_id=transform_id,
                    status="APPROVED",
                    comment=f"auto-approved (score {result.overall_score:.1f})",
                    automatic=True,
                )
                logger.info(f"Transform {transform_id} auto-approved at {result.overall_score:.1f}")
            elif result.requires_review:
                logger.info(f"Transform {transform_id} requires manual quality review")

            record = QualityRecord(result=result, decision=decision)
            self._store(transform_id, record)
            return record

    def approve(self, transform_id: str, comment: str = "") -> GateDecision:
        return self._decide(transform_id, "APPROVED", comment)

    def reject(self, transform_id: str, comment: str = "") -> GateDecision:
        return self._decide(transform_id, "REJECTED", comment)

    def get(self, transform_id: str) -> QualityRecord | None:
        with self._lock:
            return self._load(transform_id)

    def require_approved(self, transform_id: str) -> QualityRecord:
        """Return the approved record or raise QualityGateRejected."""
        record = self.get(transform_id)
        if record is None:
            raise QualityGateRejected(transform_id, "no quality result recorded")
        if record.decision is None:
            raise QualityGateRejected(transform_id, "quality result awaits approval")
        if record.decision.status != "APPROVED":
            reason = "rejected"
            if record.decision.comment:
                reason += f": {record.decision.comment}"
            raise QualityGateRejected(transform_id, reason)
        return record

    def _decide(self, transform_id: str, status: str, comment: str) -> GateDecision:
        with self._lock:
            record = self._load(transform_id)
            if record is None:
                raise NotFoundError(f"No quality result recorded for transform {transform_id}")
            decision = GateDecision(transform_id=transform_id, status=status, comment=comment)
            self._store(transform_id, record.model_copy(update={"decision": decision}))
        logger.info(f"Transform {transform_id} {status.lower()}" + (f": {comment}" if comment else ""))
        return decision

    # Caller holds self._lock for both helpers.

    def _path(self, transform_id: str) -> Path | None:
        if self.records_dir is None:
            return None
        safe = "".join(c if c.isalnum() or c in "-_." else "_" for c in transform_id)
        return self.records_dir / f"{safe}.yaml"

    def _load(self, transform_id: str) -> QualityRecord | None:
        if transform_id in self._records:
            return self._records[transform_id]
        path = self._path(transform_id)
        if path is None or not path.exists():
            return None
        with open(path) as f:
            data = yaml.safe_load(f)
        if data is None:
            return None
        record = QualityRecord.model_validate(data)
        self._records[transform_id] = record
        return record

    def _store(self, transform_id: str, record: QualityRecord) -> None:
        self._records[transform_id] = record
        path = self._path(transform_id)
        if path is None:
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.dump(
                record.model_dump(mode="json"), f,
                default_flow_style=False, sort_keys=False, allow_unicode=True,
            )
