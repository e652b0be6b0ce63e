"""
Per-system import configuration registry.

The registry document (``systems.json``) lists every supported clinic export
format and names exactly one default::

    {
      "systems": {"hill": {"displayName": "Hill Physicians", "configRef": "hill.json"}},
      "defaultId": "hill"
    }

Each ``configRef`` points at a profile document describing that export's
column layout. Profiles are loaded once and handed around as frozen
``SystemProfile`` values; ``reload()`` is the only way to pick up edits.
"""
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Union
import json
import logging
import threading

from .canonical_fields import REQUIRED_PATIENT_FIELDS, CanonicalField, parse_patient_field
from .errors import (
    ConfigMalformedError,
    ConfigMissingError,
    ConfigurationError,
    SystemNotFoundError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MeasureColumn:
    """Which measure a source column reports on."""
    request_type: str
    quality_measure: str


@dataclass(frozen=True)
class StatusLabels:
    """Measure status codes to use for compliant / non-compliant cells."""
    compliant: str
    non_compliant: str


@dataclass(frozen=True)
class SystemProfile:
    """Declarative column and status mapping for one clinic export format."""
    id: str
    display_name: str
    version: str
    patient_column_map: Mapping[str, CanonicalField]
    measure_column_map: Mapping[str, MeasureColumn]
    status_map: Mapping[str, StatusLabels]
    skip_headers: FrozenSet[str] = frozenset()

    @classmethod
    def from_document(cls, system_id: str, document: Dict[str, Any]) -> "SystemProfile":
        """
        Build a profile from its JSON document.

        Raises:
            ConfigMalformedError: when a section has the wrong shape or a
                patient column targets an unknown field
        """
        if not isinstance(document, dict):
            raise ConfigMalformedError(f"Profile for '{system_id}' must be a JSON object")

        try:
            patient_map = {
                str(header).strip(): parse_patient_field(target)
                for header, target in document.get("patientColumnMap", {}).items()
            }
            measure_map = {
                str(header).strip(): MeasureColumn(
                    request_type=entry["requestType"],
                    quality_measure=entry["qualityMeasure"],
                )
                for header, entry in document.get("measureColumnMap", {}).items()
            }
            status_map = {
                measure: StatusLabels(
                    compliant=labels["compliant"],
                    non_compliant=labels["nonCompliant"],
                )
                for measure, labels in document.get("statusMap", {}).items()
            }
            skip_headers = frozenset(str(h).strip() for h in document.get("skipHeaders", []))
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise ConfigMalformedError(
                f"Profile for '{system_id}' is malformed: {e}",
                details={"system_id": system_id},
                cause=e,
            )

        return cls(
            id=system_id,
            display_name=document.get("displayName", system_id),
            version=str(document.get("version", "1")),
            patient_column_map=MappingProxyType(patient_map),
            measure_column_map=MappingProxyType(measure_map),
            status_map=MappingProxyType(status_map),
            skip_headers=skip_headers,
        )

    def required_headers(self) -> List[str]:
        """Source headers mapped to required patient fields (name and DOB)."""
        headers = []
        for required in REQUIRED_PATIENT_FIELDS:
            headers.extend(h for h, target in self.patient_column_map.items() if target == required)
        return headers

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "version": self.version,
            "patient_columns": {h: f.value for h, f in self.patient_column_map.items()},
            "measure_columns": {
                h: {"request_type": m.request_type, "quality_measure": m.quality_measure}
                for h, m in self.measure_column_map.items()
            },
            "status_map": {
                qm: {"compliant": s.compliant, "non_compliant": s.non_compliant}
                for qm, s in self.status_map.items()
            },
            "skip_headers": sorted(self.skip_headers),
        }


@dataclass(frozen=True)
class SystemEntry:
    """One row of the registry document."""
    id: str
    display_name: str
    config_ref: str


@dataclass(frozen=True)
class SystemListing:
    id: str
    display_name: str
    is_default: bool

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "display_name": self.display_name, "is_default": self.is_default}


@dataclass(frozen=True)
class RegistryDocument:
    systems: Mapping[str, SystemEntry]
    default_id: str


@dataclass
class _RegistryState:
    document: RegistryDocument
    profiles: Dict[str, SystemProfile] = field(default_factory=dict)
    load_errors: Dict[str, ConfigurationError] = field(default_factory=dict)


def _read_json(path: Path, what: str) -> Any:
    if not path.exists():
        raise ConfigMissingError(f"{what} not found: {path.name}", details={"path": str(path)})
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigMalformedError(
            f"{what} is not valid JSON: {path.name}",
            details={"path": str(path), "line": e.lineno},
            cause=e,
        )


class ConfigRegistry:
    """
    Loads and serves ``SystemProfile`` objects.

    A profile that fails to load only takes its own system down: the error is
    kept and re-raised from ``get()`` for that id, every other system keeps
    working.
    """

    def __init__(self, config_dir: Union[str, Path], registry_file: str = "systems.json"):
        self.config_dir = Path(config_dir)
        self.registry_file = registry_file
        self._lock = threading.Lock()
        self._state: Optional[_RegistryState] = None

    @property
    def registry_path(self) -> Path:
        return self.config_dir / self.registry_file

    def load(self) -> RegistryDocument:
        """
        Read the registry and every profile it references.

        Returns:
            The parsed registry document

        Raises:
            ConfigMissingError: registry file absent
            ConfigMalformedError: registry not JSON or default id invalid
        """
        state = self._build_state()
        with self._lock:
            self._state = state
        return state.document

    def reload(self) -> RegistryDocument:
        """Administrative reload; the previous state stays live if this fails."""
        logger.info(f"[REGISTRY] Reloading import configuration from {self.config_dir}")
        return self.load()

    def _build_state(self) -> _RegistryState:
        document = self._parse_registry(_read_json(self.registry_path, "Systems registry"))
        state = _RegistryState(document=document)

        for system_id, entry in document.systems.items():
            try:
                profile_doc = _read_json(self.config_dir / entry.config_ref, f"Profile for '{system_id}'")
                state.profiles[system_id] = SystemProfile.from_document(system_id, profile_doc)
            except ConfigurationError as e:
                logger.error(f"[REGISTRY] Could not load system '{system_id}': {e}")
                state.load_errors[system_id] = e

        logger.info(
            f"[REGISTRY] Loaded {len(state.profiles)}/{len(document.systems)} systems "
            f"(default={document.default_id})"
        )
        return state

    @staticmethod
    def _parse_registry(raw: Any) -> RegistryDocument:
        if not isinstance(raw, dict) or not isinstance(raw.get("systems"), dict):
            raise ConfigMalformedError("Systems registry must contain a 'systems' object")

        systems: Dict[str, SystemEntry] = {}
        for system_id, info in raw["systems"].items():
            if not isinstance(info, dict) or not info.get("configRef"):
                raise ConfigMalformedError(
                    f"Registry entry '{system_id}' needs a configRef",
                    details={"system_id": system_id},
                )
            systems[system_id] = SystemEntry(
                id=system_id,
                display_name=info.get("displayName", system_id),
                config_ref=info["configRef"],
            )

        default_id = raw.get("defaultId")
        if default_id not in systems:
            raise ConfigMalformedError(
                f"Registry defaultId '{default_id}' does not name a listed system",
                details={"default_id": default_id, "systems": list(systems)},
            )

        return RegistryDocument(systems=MappingProxyType(systems), default_id=default_id)

    def _current(self) -> _RegistryState:
        with self._lock:
            state = self._state
        if state is None:
            raise ConfigurationError("Import configuration has not been loaded")
        return state

    @property
    def default_id(self) -> str:
        return self._current().document.default_id

    def get(self, system_id: str) -> SystemProfile:
        """Return the profile for ``system_id`` (case-sensitive)."""
        state = self._current()
        if system_id not in state.document.systems:
            raise SystemNotFoundError(system_id, available=list(state.document.systems))
        if system_id in state.load_errors:
            raise state.load_errors[system_id]
        return state.profiles[system_id]

    def list(self) -> List[SystemListing]:
        state = self._current()
        return [
            SystemListing(
                id=entry.id,
                display_name=entry.display_name,
                is_default=entry.id == state.document.default_id,
            )
            for entry in state.document.systems.values()
        ]
