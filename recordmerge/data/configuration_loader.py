"""
Matching configuration loader.

Reads the declarative configuration source (a JSON document of
configuration records) and turns it into MatchConfiguration values.
Records use the external field names:

    {"label": "Account Name Match", "developerName": "Account_Name",
     "objectType": "Account", "matchFields": "Name,Phone,BillingCity",
     "masterStrategy": "OldestCreated", "batchSize": 200, "active": true}
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from ..core.errors import AccessError, ConfigurationError
from ..core.models import MasterStrategy, MatchConfiguration

logger = logging.getLogger(__name__)


class ConfigurationRecord(BaseModel):
    """One configuration record as stored in the declarative source."""

    model_config = ConfigDict(populate_by_name=True)

    label: str
    developer_name: str = Field(alias="developerName")
    object_type: str = Field(alias="objectType")
    match_fields: str = Field(alias="matchFields")
    master_strategy: str = Field(default="OldestCreated", alias="masterStrategy")
    batch_size: int = Field(default=200, alias="batchSize", ge=1)
    active: bool = True
    required_fields: Optional[str] = Field(default=None, alias="requiredFields")
    accessible: bool = True

    def to_configuration(self) -> MatchConfiguration:
        """Convert to the engine's value type.

        Raises:
            ConfigurationError: If the strategy is unknown or no match fields are given
        """
        try:
            strategy = MasterStrategy.parse(self.master_strategy)
        except ValueError as e:
            raise ConfigurationError(f"Configuration {self.developer_name}: {e}")

        match_fields = MatchConfiguration.split_fields(self.match_fields)
        if not match_fields:
            raise ConfigurationError(
                f"Configuration {self.developer_name} defines no match fields"
            )

        return MatchConfiguration(
            id=self.developer_name,
            label=self.label,
            object_type=self.object_type,
            match_fields=match_fields,
            master_strategy=strategy,
            batch_size=self.batch_size,
            active=self.active,
            required_fields=MatchConfiguration.split_fields(self.required_fields),
        )


class ConfigurationResolver:
    """Loads active matching configurations from a declarative source.

    The source is either a path to a JSON file, or an already-parsed
    sequence of records (as returned by a metadata query).
    """

    def __init__(self, source: str | Path | Sequence[Dict[str, Any]] | None):
        """
        Initialize the resolver.

        Args:
            source: JSON file path, or list of configuration records
        """
        self.source = source

    def _read_records(self) -> List[Dict[str, Any]]:
        if self.source is None:
            raise ConfigurationError("No matching configuration source defined")

        if not isinstance(self.source, (str, Path)):
            return list(self.source)

        path = Path(self.source)
        if not path.exists():
            raise ConfigurationError(f"Configuration source not found: {path}")

        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except PermissionError as e:
            raise AccessError(f"Read permission denied for configuration source: {path}") from e
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(
                f"Configuration source unreadable: {path}", details=str(e)
            ) from e

        # Either a bare list or {"configurations": [...]}
        if isinstance(data, dict):
            data = data.get('configurations', [])
        if not isinstance(data, list):
            raise ConfigurationError(f"Configuration source has unexpected shape: {path}")

        return data

    def load_all(self) -> List[MatchConfiguration]:
        """Load every configuration, active or not.

        Raises:
            ConfigurationError: If the source is missing or malformed
            AccessError: If a record reports its fields as unreadable
        """
        configurations = []
        for raw in self._read_records():
            try:
                record = ConfigurationRecord.model_validate(raw)
            except PydanticValidationError as e:
                raise ConfigurationError(
                    "Malformed configuration record", details=str(e)
                ) from e

            if not record.accessible:
                raise AccessError(
                    f"Field-level read permission denied for configuration "
                    f"{record.developer_name}"
                )

            configurations.append(record.to_configuration())

        logger.debug(f"Loaded {len(configurations)} matching configurations")
        return configurations

    def list_active_configurations(self) -> List[MatchConfiguration]:
        """Return active configurations ordered by label.

        Ties on label (case-insensitive) are broken by configuration id.
        """
        active = [c for c in self.load_all() if c.active]
        active.sort(key=lambda c: (c.label.lower(), c.id))
        return active

    def get_configuration(self, config_id: str) -> MatchConfiguration:
        """Look up one active configuration by id.

        Raises:
            ConfigurationError: If no active configuration has this id
        """
        for configuration in self.list_active_configurations():
            if configuration.id == config_id:
                return configuration
        raise ConfigurationError(f"No active matching configuration: {config_id}")
