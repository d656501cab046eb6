"""YAML configuration parser for fleetform desired-state documents."""

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError

from fleetform.config.models import RESERVED_KEYS, DeclarationOptions, EngineSettings
from fleetform.resources.models import Reference, Resource
from fleetform.resources.schema import Mutability, ResourceKind
from fleetform.utils.errors import ConfigurationError

STATE_PATH_ENV = "FLEETFORM_STATE_PATH"
DEFAULT_CONFIG_FILE = "fleetform.yaml"


class ConfigValidationError(ConfigurationError):
    """Exception raised when configuration validation fails."""

    def __init__(self, message: str, errors: Optional[List[Dict]] = None):
        self.errors = errors or []
        super().__init__(message)

    def __str__(self) -> str:
        """Format validation errors for display."""
        if not self.errors:
            return self.message

        error_lines = [self.message, ""]
        for error in self.errors:
            location = " -> ".join(str(loc) for loc in error.get("loc", []))
            msg = error.get("msg", "Unknown error")
            error_lines.append(f"  - {location}: {msg}")

        return "\n".join(error_lines)


def parse_references(value: Any, loc: List[Any], errors: List[Dict]) -> Any:
    """Turn ``{ref: "kind.name.attr"}`` mappings into Reference values."""
    if isinstance(value, dict):
        if set(value) == {"ref"}:
            expression = value["ref"]
            if not isinstance(expression, str):
                errors.append({"loc": loc + ["ref"], "msg": "Reference must be a string"})
                return value
            try:
                return Reference.parse(expression)
            except (ValueError, ValidationError) as e:
                errors.append({"loc": loc + ["ref"], "msg": f"Invalid reference {expression!r}: {_first_message(e)}"})
                return value
        return {key: parse_references(item, loc + [key], errors) for key, item in value.items()}
    if isinstance(value, list):
        return [parse_references(item, loc + [index], errors) for index, item in enumerate(value)]
    return value


def _first_message(error: Exception) -> str:
    if isinstance(error, ValidationError):
        return error.errors()[0]["msg"]
    return str(error)


class Config:
    """Configuration manager for fleetform."""

    def __init__(self, config_path: str = DEFAULT_CONFIG_FILE):
        """Initialize configuration manager.

        Args:
            config_path: Path to fleetform.yaml configuration file
        """
        self.config_path = Path(config_path)
        self.data: Dict = {}
        self.settings: EngineSettings = EngineSettings()
        self.resources: List[Resource] = []

    def load(self) -> "Config":
        """Load and validate configuration from YAML file.

        Returns:
            Self for method chaining

        Raises:
            ConfigValidationError: If configuration is invalid
            FileNotFoundError: If configuration file doesn't exist
        """
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        try:
            with open(self.config_path, "r") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigValidationError(f"Failed to parse YAML: {e}")

        return self.load_dict(data)

    def load_dict(self, data: Dict) -> "Config":
        """Validate an already-parsed document.

        Raises:
            ConfigValidationError: If the document is invalid
        """
        if not isinstance(data, dict):
            raise ConfigValidationError("Configuration must be a mapping")
        self.data = data

        errors: List[Dict] = []
        settings = self._parse_settings(data.get("settings") or {}, errors)
        resources = self._parse_resources(data.get("resources"), errors)

        unknown = sorted(set(data) - {"settings", "resources"})
        for key in unknown:
            errors.append({"loc": [key], "msg": "Unknown top-level section"})

        if errors:
            raise ConfigValidationError(
                f"Configuration validation failed with {len(errors)} error(s)",
                errors,
            )

        self.settings = settings
        self.resources = resources
        self._apply_environment()
        return self

    def validate(self) -> List[Dict]:
        """Validate the loaded data.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: List[Dict] = []
        self._parse_settings(self.data.get("settings") or {}, errors)
        self._parse_resources(self.data.get("resources"), errors)
        return errors

    @property
    def state_path(self) -> Path:
        """State file location, relative paths taken from the config file's directory."""
        path = Path(self.settings.state_path)
        if not path.is_absolute():
            path = self.config_path.parent / path
        return path

    def get_resource(self, address: str) -> Optional[Resource]:
        for resource in self.resources:
            if resource.address == address:
                return resource
        return None

    def _apply_environment(self) -> None:
        override = os.environ.get(STATE_PATH_ENV)
        if override:
            self.settings = self.settings.model_copy(update={"state_path": override})

    def _parse_settings(self, data: Any, errors: List[Dict]) -> EngineSettings:
        if not isinstance(data, dict):
            errors.append({"loc": ["settings"], "msg": "Settings must be a mapping"})
            return EngineSettings()
        try:
            return EngineSettings(**data)
        except ValidationError as e:
            for error in e.errors():
                errors.append({"loc": ["settings"] + list(error["loc"]), "msg": error["msg"]})
            return EngineSettings()

    def _parse_resources(self, data: Any, errors: List[Dict]) -> List[Resource]:
        if data is None:
            errors.append({"loc": ["resources"], "msg": "Required field 'resources' is missing"})
            return []
        if not isinstance(data, dict):
            errors.append({"loc": ["resources"], "msg": "Resources must be a mapping of kind -> name -> declaration"})
            return []

        resources = []
        for kind, declarations in data.items():
            loc = ["resources", kind]
            try:
                kind = ResourceKind(kind)
            except ValueError:
                valid = ", ".join(k.value for k in ResourceKind)
                errors.append({"loc": loc, "msg": f"Unknown resource kind (expected one of: {valid})"})
                continue
            if not isinstance(declarations, dict):
                errors.append({"loc": loc, "msg": "Expected a mapping of name -> declaration"})
                continue

            for name, declaration in declarations.items():
                resource = self._parse_declaration(kind, name, declaration, loc + [name], errors)
                if resource is not None:
                    resources.append(resource)

        return resources

    def _parse_declaration(
        self,
        kind: ResourceKind,
        name: Any,
        declaration: Any,
        loc: List[Any],
        errors: List[Dict]
    ) -> Optional[Resource]:
        declaration = declaration or {}
        if not isinstance(declaration, dict):
            errors.append({"loc": loc, "msg": "Declaration must be a mapping of attributes"})
            return None

        reserved = {key: value for key, value in declaration.items() if key in RESERVED_KEYS}
        attributes = {key: value for key, value in declaration.items() if key not in RESERVED_KEYS}

        try:
            options = DeclarationOptions(**reserved)
        except ValidationError as e:
            for error in e.errors():
                errors.append({"loc": loc + list(error["loc"]), "msg": error["msg"]})
            return None

        count = len(errors)
        attributes = parse_references(attributes, loc, errors)
        if len(errors) > count:
            return None

        mutability = {attribute: Mutability.IMMUTABLE for attribute in options.immutable}
        mutability.update({attribute: Mutability.MUTABLE for attribute in options.mutable})

        try:
            return Resource(
                kind=kind,
                name=str(name),
                attributes=attributes,
                mutability=mutability,
                lifecycle=options.lifecycle,
                depends_on=options.depends_on,
            )
        except ValidationError as e:
            for error in e.errors():
                errors.append({"loc": loc + list(error["loc"]), "msg": error["msg"]})
            return None
