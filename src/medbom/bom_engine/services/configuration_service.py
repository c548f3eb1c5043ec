"""
Configuration Service
Creates, validates, approves and revises customer configurations, and serves
them to BOM generation as the configuration source.
"""

import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, Optional, Protocol

from sqlalchemy.orm import Session

from medbom.bom_engine.fingerprint import canonical_json
from medbom.bom_engine.models.configuration import Configuration, ConfigurationStatus
from medbom.bom_engine.rules.repository import RuleScope
from medbom.bom_engine.services.config_validator import ConfigurationValidator, ValidationResult
from medbom.exceptions import NotFoundError, StateTransitionError

logger = logging.getLogger(__name__)

C = ConfigurationStatus

CONFIGURATION_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    C.DRAFT.value: frozenset({C.VALIDATING.value, C.SUPERSEDED.value}),
    C.VALIDATING.value: frozenset({C.VALID.value, C.INVALID.value}),
    C.VALID.value: frozenset({C.VALIDATING.value, C.APPROVED.value, C.REJECTED.value, C.SUPERSEDED.value}),
    C.INVALID.value: frozenset({C.VALIDATING.value, C.REJECTED.value, C.SUPERSEDED.value}),
    C.APPROVED.value: frozenset({C.SUPERSEDED.value}),
    C.REJECTED.value: frozenset(),
    C.SUPERSEDED.value: frozenset(),
}


@dataclass(frozen=True)
class ConfigurationRecord:
    """What BOM generation needs from a configuration."""

    configuration_id: str
    chain_id: str
    assembly_id: str
    selections: Dict[str, Any] = field(hash=False)
    category_id: Optional[str] = None
    version: str = "1.0"
    status: str = C.DRAFT.value


class ConfigurationSource(Protocol):
    def load(self, configuration_id: str) -> ConfigurationRecord: ...


def _to_record(row: Configuration) -> ConfigurationRecord:
    return ConfigurationRecord(
        configuration_id=row.id,
        chain_id=row.chain_id,
        assembly_id=row.assembly_id,
        selections=dict(row.selections or {}),
        category_id=row.category_id,
        version=row.version,
        status=row.status,
    )


def _json_safe(value: Any) -> Any:
    return json.loads(canonical_json(value))


def bump_minor(version: Optional[str]) -> str:
    major, _, minor = (version or "1.0").partition(".")
    return f"{int(major or 1)}.{int(minor or 0) + 1}"


class InMemoryConfigurationSource:
    def __init__(self):
        self._lock = threading.Lock()
        self._records: Dict[str, ConfigurationRecord] = {}

    def add(self, record: ConfigurationRecord) -> None:
        with self._lock:
            self._records[record.configuration_id] = record

    def load(self, configuration_id: str) -> ConfigurationRecord:
        with self._lock:
            record = self._records.get(configuration_id)
        if record is None:
            raise NotFoundError("Configuration", configuration_id)
        return record


class SQLConfigurationSource:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    def load(self, configuration_id: str) -> ConfigurationRecord:
        session = self.session_factory()
        try:
            row = session.get(Configuration, configuration_id)
            if row is None:
                raise NotFoundError("Configuration", configuration_id)
            return _to_record(row)
        finally:
            session.close()


class ConfigurationService:
    def __init__(self, session: Session, validator: Optional[ConfigurationValidator] = None):
        self.session = session
        self.validator = validator

    def get(self, configuration_id: str) -> Configuration:
        row = self.session.get(Configuration, configuration_id)
        if row is None:
            raise NotFoundError("Configuration", configuration_id)
        return row

    def get_by_code(self, code: str) -> Configuration:
        row = self.session.query(Configuration).filter(Configuration.code == code).one_or_none()
        if row is None:
            raise NotFoundError("Configuration", code)
        return row

    def load(self, configuration_id: str) -> ConfigurationRecord:
        return _to_record(self.get(configuration_id))

    def create(
        self,
        name: str,
        assembly_id: str,
        selections: Dict[str, Any],
        *,
        category_id: Optional[str] = None,
        code: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Configuration:
        config_id = str(uuid.uuid4())
        row = Configuration(
            id=config_id,
            chain_id=config_id,
            name=name,
            code=code,
            assembly_id=assembly_id,
            category_id=category_id,
            selections=_json_safe(selections),
            status=C.DRAFT.value,
            version="1.0",
            is_latest=True,
            created_by=created_by,
        )
        self.session.add(row)
        self.session.flush()
        logger.info(f"Created configuration {code or config_id} for {assembly_id}")
        return row

    def _move(self, row: Configuration, to_state: str) -> None:
        if to_state not in CONFIGURATION_TRANSITIONS.get(row.status, frozenset()):
            raise StateTransitionError(row.status, to_state, resource=f"configuration {row.id}")
        row.status = to_state

    def validate(self, configuration_id: str, as_of: Optional[datetime] = None) -> ValidationResult:
        if self.validator is None:
            raise RuntimeError("ConfigurationService was created without a validator")
        row = self.get(configuration_id)
        self._move(row, C.VALIDATING.value)
        self.session.flush()

        result = self.validator.validate(
            row.selections or {},
            RuleScope(assembly_id=row.assembly_id, category_id=row.category_id),
            as_of,
        )
        row.validation_errors = [v.to_dict() for v in result.errors]
        row.validation_warnings = [v.to_dict() for v in result.warnings]
        row.derived_attributes = _json_safe(result.derived_attributes)
        row.is_valid = result.is_valid
        self._move(row, C.VALID.value if result.is_valid else C.INVALID.value)
        self.session.flush()
        return result

    def approve(self, configuration_id: str, approver_identity: str) -> Configuration:
        row = self.get(configuration_id)
        self._move(row, C.APPROVED.value)
        row.approved_by = approver_identity
        row.approved_at = datetime.utcnow()
        self.session.flush()
        return row

    def reject(self, configuration_id: str, approver_identity: str, reason: str) -> Configuration:
        row = self.get(configuration_id)
        self._move(row, C.REJECTED.value)
        row.rejected_by = approver_identity
        row.rejected_at = datetime.utcnow()
        row.rejection_reason = reason
        self.session.flush()
        return row

    def revise(
        self,
        configuration_id: str,
        selections: Dict[str, Any],
        *,
        change_reason: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Configuration:
        """
        Create the next chain member; it takes the latest pointer and the
        previous member becomes SUPERSEDED.
        """
        current = self.get(configuration_id)
        if not current.is_latest:
            raise StateTransitionError(
                current.status,
                C.SUPERSEDED.value,
                resource=f"configuration {current.id}",
                reason="only the latest chain member can be revised",
            )
        self._move(current, C.SUPERSEDED.value)
        current.is_latest = False
        code, current.code = current.code, None
        self.session.flush()

        revision = Configuration(
            id=str(uuid.uuid4()),
            chain_id=current.chain_id,
            name=current.name,
            code=code,
            assembly_id=current.assembly_id,
            category_id=current.category_id,
            selections=_json_safe(selections),
            status=C.DRAFT.value,
            version=bump_minor(current.version),
            parent_configuration_id=current.id,
            is_latest=True,
            change_reason=change_reason,
            created_by=created_by,
        )
        self.session.add(revision)
        self.session.flush()
        logger.info(
            f"Revised configuration chain {current.chain_id}: {current.version} -> {revision.version}"
        )
        return revision
