"""Configuration manager: engine config, template documents and variable substitution."""

import os
import yaml
import json
import logging
from typing import Dict, Any, Optional, List, Union
from pathlib import Path
import re

from pydantic import ValidationError as PydanticValidationError
from .schema import EngineConfig, TemplateDocument, ValidationResult, ValidationError
from ..core.errors import TemplateError
from ..core.interfaces import PipelineTemplate
from ..core.registry import TemplateRegistry


BUNDLED_TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"


class ConfigManager:
    """Manages engine configuration loading, validation, and variable substitution."""

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)
        self._config_cache: Dict[str, EngineConfig] = {}

    def load_config(self, config_path: str, validate: bool = True) -> EngineConfig:
        """
        Load and validate engine configuration from file.

        Args:
            config_path: Path to configuration file (YAML or JSON)
            validate: Whether to run custom validations and report warnings

        Returns:
            EngineConfig: Validated configuration object

        Raises:
            ValidationError: If configuration is invalid
            FileNotFoundError: If config file doesn't exist
        """
        config_path = Path(config_path)

        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        cache_key = str(config_path.absolute())
        if cache_key in self._config_cache:
            self.logger.debug(f"Using cached configuration for {config_path}")
            return self._config_cache[cache_key]

        try:
            raw_config = self._load_raw_config(config_path) or {}
            resolved_config = self.resolve_variables(raw_config)

            if validate:
                validation_result = self.validate_schema(resolved_config)
                if not validation_result.valid:
                    raise ValidationError(
                        f"Configuration validation failed: {'; '.join(validation_result.errors)}",
                        validation_result.errors
                    )
                for warning in validation_result.warnings:
                    self.logger.warning(warning)
                config = validation_result.config
            else:
                try:
                    config = EngineConfig(**resolved_config)
                except PydanticValidationError as e:
                    raise ValidationError(f"Configuration validation failed: {str(e)}") from e

            config = self._resolve_relative_paths(config, config_path.parent)
            self._config_cache[cache_key] = config

            self.logger.info(f"Successfully loaded configuration from {config_path}")
            return config

        except Exception as e:
            self.logger.error(f"Failed to load configuration from {config_path}: {str(e)}")
            raise

    def _load_raw_config(self, config_path: Path) -> Dict[str, Any]:
        """Load raw configuration from file."""
        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                if config_path.suffix.lower() in ['.yaml', '.yml']:
                    return yaml.safe_load(f)
                elif config_path.suffix.lower() == '.json':
                    return json.load(f)
                else:
                    raise ValidationError(f"Unsupported configuration file format: {config_path.suffix}")
        except yaml.YAMLError as e:
            raise ValidationError(f"Invalid YAML syntax: {str(e)}")
        except json.JSONDecodeError as e:
            raise ValidationError(f"Invalid JSON syntax: {str(e)}")

    def _resolve_relative_paths(self, config: EngineConfig, base_dir: Path) -> EngineConfig:
        """Directory settings are relative to the config file."""
        updates = {}
        for field_name in ("templates_dir", "credentials_dir"):
            value = getattr(config, field_name)
            if value and not Path(value).is_absolute():
                updates[field_name] = str((base_dir / value).resolve())
        return config.model_copy(update=updates) if updates else config

    def validate_schema(self, config: Dict[str, Any]) -> ValidationResult:
        """
        Validate configuration against schema.

        Args:
            config: Raw configuration dictionary

        Returns:
            ValidationResult: Validation result with errors and warnings
        """
        errors = []
        warnings = []

        try:
            engine_config = EngineConfig(**config)
            warnings.extend(self._perform_custom_validations(engine_config))

            return ValidationResult(
                valid=True,
                errors=errors,
                warnings=warnings,
                config=engine_config
            )

        except PydanticValidationError as e:
            for error in e.errors():
                field_path = " -> ".join(str(loc) for loc in error['loc'])
                errors.append(f"{field_path}: {error['msg']}")

            return ValidationResult(
                valid=False,
                errors=errors,
                warnings=warnings,
                config=None
            )
        except TypeError as e:
            errors.append(f"Unexpected validation error: {str(e)}")
            return ValidationResult(
                valid=False,
                errors=errors,
                warnings=warnings,
                config=None
            )

    def _perform_custom_validations(self, config: EngineConfig) -> List[str]:
        """Perform additional custom validations and return warnings."""
        warnings = []
        settings = config.settings

        if not config.bindings:
            warnings.append("No repository bindings configured; every trigger will be rejected.")

        for binding in config.bindings:
            if binding.credential and not config.credentials_dir:
                warnings.append(f"Binding {binding.repository} references credential "
                                f"'{binding.credential}' but no credentials_dir is configured.")
            if not binding.status_url:
                warnings.append(f"Binding {binding.repository} has no status_url; status will only be logged.")

        if settings.provision_poll_interval >= settings.provision_timeout:
            warnings.append("provision_poll_interval is not smaller than provision_timeout.")

        return warnings

    def resolve_variables(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """
        Resolve environment variables in configuration.

        Args:
            config: Raw configuration dictionary

        Returns:
            Dict[str, Any]: Configuration with resolved variables
        """
        def resolve_value(value):
            if isinstance(value, str):
                return self._substitute_variables(value)
            elif isinstance(value, dict):
                return {k: resolve_value(v) for k, v in value.items()}
            elif isinstance(value, list):
                return [resolve_value(item) for item in value]
            else:
                return value

        return resolve_value(config)

    def _substitute_variables(self, value: str) -> str:
        """
        Substitute environment variables in string values.

        Supports ${env:VAR_NAME} and ${env:VAR_NAME:default}. Other ``${...}``
        forms are left alone so template placeholders survive.
        """
        pattern = re.compile(r'\$\{env:([A-Za-z_][A-Za-z0-9_]*)(?::([^}]*))?\}')

        def replace_match(match):
            var_name = match.group(1)
            default_value = match.group(2) if match.group(2) is not None else ""
            return os.environ.get(var_name, default_value)

        return pattern.sub(replace_match, value)

    def load_templates(self, path: Union[str, Path]) -> List[PipelineTemplate]:
        """
        Load template documents from a YAML/JSON file or a directory of them.

        Raises:
            TemplateError: If a document is malformed
            FileNotFoundError: If ``path`` doesn't exist
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Template path not found: {path}")

        if path.is_dir():
            files = sorted(p for p in path.iterdir() if p.suffix.lower() in ('.yaml', '.yml', '.json'))
        else:
            files = [path]

        templates = []
        for file_path in files:
            try:
                raw = self._load_raw_config(file_path)
            except ValidationError as e:
                raise TemplateError(f"{file_path}: {e.message}") from e

            documents = raw if isinstance(raw, list) else [raw]
            for document in documents:
                try:
                    templates.append(TemplateDocument(**(document or {})).to_template())
                except PydanticValidationError as e:
                    details = "; ".join(
                        "{}: {}".format(" -> ".join(str(loc) for loc in error['loc']), error['msg'])
                        for error in e.errors()
                    )
                    raise TemplateError(f"{file_path}: invalid template: {details}") from e

        self.logger.info(f"Loaded {len(templates)} template(s) from {path}")
        return templates

    def build_registry(self, templates_dir: Optional[str] = None) -> TemplateRegistry:
        """Registry holding every template under ``templates_dir`` (default: bundled)."""
        registry = TemplateRegistry()
        for template in self.load_templates(templates_dir or BUNDLED_TEMPLATES_DIR):
            registry.publish(template)
        return registry

    def save_config(self, config: EngineConfig, output_path: str, format: str = "yaml") -> None:
        """
        Save configuration to file.

        Args:
            config: Configuration to save
            output_path: Output file path
            format: Output format ('yaml' or 'json')
        """
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        config_dict = config.model_dump(mode='json', exclude_none=True)

        try:
            with open(output_path, 'w', encoding='utf-8') as f:
                if format.lower() == 'yaml':
                    yaml.dump(config_dict, f, default_flow_style=False, indent=2, sort_keys=False)
                elif format.lower() == 'json':
                    json.dump(config_dict, f, indent=2)
                else:
                    raise ValueError(f"Unsupported format: {format}")

            self.logger.info(f"Configuration saved to {output_path}")

        except Exception as e:
            self.logger.error(f"Failed to save configuration to {output_path}: {str(e)}")
            raise

    def clear_cache(self) -> None:
        """Clear the configuration cache."""
        self._config_cache.clear()
        self.logger.debug("Configuration cache cleared")

    def get_default_config(self) -> Dict[str, Any]:
        """Get a default configuration template."""
        return {
            "settings": {
                "provision_timeout": 120,
                "stage_timeout": 1800,
                "push_max_attempts": 3,
                "push_backoff": 2.0,
                "max_concurrent_runs": 4
            },
            "credentials_dir": "./credentials",
            "bindings": [
                {
                    "repository": "github.com/example/flaskapp-logger",
                    "template": "python-container-release",
                    "credential": "registry",
                    "config": {
                        "imageName": "example/logger",
                        "imageTag": "${env:BUILD_NUMBER:latest}",
                        "port": 5000,
                        "repoUrl": "https://github.com/example/flaskapp-logger.git"
                    }
                }
            ]
        }
