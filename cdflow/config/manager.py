"""Configuration manager with validation and loading capabilities."""

import os
import yaml
import json
import logging
from typing import Dict, Any, Optional, List
from pathlib import Path
import re

from pydantic import ValidationError as PydanticValidationError
from .schema import PipelineConfig, ValidationResult, ValidationError
from ..collaborators import GitSourceProvider, LedgerDeployer, ShellBuilder
from ..core.artifacts import ArtifactStore
from ..core.errors import RetryPolicy
from ..core.gate import ApprovalGate
from ..core.interfaces import ActionCapability, Pipeline
from ..core.orchestrator import PipelineEngine
from ..core.registry import PipelineRegistry
from ..core.runner import StageRunner
from ..core.state import RunStore


class ConfigManager:
    """Manages pipeline configuration loading, validation, and variable substitution."""

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)
        self._config_cache: Dict[str, PipelineConfig] = {}

    def load_config(self, config_path: str, validate: bool = True) -> PipelineConfig:
        """
        Load and validate configuration from file.

        Args:
            config_path: Path to configuration file (YAML or JSON)
            validate: Whether to run the additional custom validations

        Returns:
            PipelineConfig: Validated configuration object

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
            raw_config = self._load_raw_config(config_path)
            resolved_config = self.resolve_variables(raw_config or {})

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
                    config = PipelineConfig.model_validate(resolved_config)
                except PydanticValidationError as e:
                    raise ValidationError(f"Configuration validation failed: {str(e)}") from e

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

    def validate_schema(self, config: Dict[str, Any]) -> ValidationResult:
        """
        Validate configuration against schema.

        Args:
            config: Raw configuration document

        Returns:
            ValidationResult: Validation result with errors and warnings
        """
        errors = []
        warnings = []

        try:
            pipeline_config = PipelineConfig.model_validate(config)
            warnings.extend(self._perform_custom_validations(pipeline_config))

            return ValidationResult(
                valid=True,
                errors=errors,
                warnings=warnings,
                config=pipeline_config
            )

        except PydanticValidationError as e:
            for error in e.errors():
                field_path = " -> ".join(str(loc) for loc in error['loc'])
                error_msg = f"{field_path}: {error['msg']}" if field_path else error['msg']
                errors.append(error_msg)

            return ValidationResult(
                valid=False,
                errors=errors,
                warnings=warnings,
                config=None
            )

    def _perform_custom_validations(self, config: PipelineConfig) -> List[str]:
        """Perform additional custom validations and return warnings."""
        warnings = []
        gated = False

        for stage in config.pipeline.stages:
            gate_orders = [action.run_order for action in stage.actions
                           if action.capability == ActionCapability.MANUAL_APPROVAL]
            for action in stage.actions:
                if action.capability != ActionCapability.DEPLOY:
                    continue
                guarded = gated or any(order < action.run_order for order in gate_orders)
                if "prod" in (action.service_id or "").lower() and not guarded:
                    warnings.append(f"Deploy action {stage.name}/{action.name} targets "
                                    f"{action.service_id} without a preceding manual approval.")
                if any(order == action.run_order for order in gate_orders):
                    warnings.append(f"Deploy action {stage.name}/{action.name} shares run_order "
                                    f"{action.run_order} with an approval and will not wait for it.")
            if gate_orders:
                gated = True

        if config.runner.max_retries == 0:
            warnings.append("Transient collaborator failures will not be retried (max_retries is 0).")

        if config.state.directory is None:
            warnings.append("Run records are kept in memory only; runs cannot resume after a restart.")

        return warnings

    def resolve_variables(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """
        Resolve environment variables and other substitutions in configuration.

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
        Substitute environment variables and other placeholders in string values.

        Supports:
        - ${VAR_NAME} or ${VAR_NAME:default_value}
        - $VAR_NAME
        """
        pattern1 = re.compile(r'\$\{([^}:]+)(?::([^}]*))?\}')

        def replace_match(match):
            var_name = match.group(1)
            default_value = match.group(2) if match.group(2) is not None else ""
            return os.environ.get(var_name, default_value)

        result = pattern1.sub(replace_match, value)

        pattern2 = re.compile(r'\$([A-Za-z_][A-Za-z0-9_]*)')

        def replace_simple(match):
            var_name = match.group(1)
            return os.environ.get(var_name, f"${var_name}")  # Keep original if not found

        result = pattern2.sub(replace_simple, result)

        return result

    def build_pipeline(self, config: PipelineConfig) -> Pipeline:
        """Convert a validated configuration into an immutable pipeline definition."""
        return config.pipeline.to_pipeline()

    def build_engine(self, config: PipelineConfig,
                     registry: Optional[PipelineRegistry] = None,
                     runner: Optional[StageRunner] = None) -> PipelineEngine:
        """Assemble an engine, its stores and local collaborators from configuration."""
        if runner is None:
            collaborators = config.collaborators
            runner = StageRunner(
                source_provider=GitSourceProvider(collaborators.source.path),
                builder=ShellBuilder(cwd=collaborators.builder.cwd, timeout=collaborators.builder.timeout),
                deployer=LedgerDeployer(collaborators.deployer.ledger_path),
                retry_policy=RetryPolicy(
                    max_retries=config.runner.max_retries,
                    retry_delay=config.runner.retry_delay,
                    exponential_backoff=config.runner.exponential_backoff,
                    max_delay=config.runner.max_delay
                )
            )

        engine = PipelineEngine(
            registry=registry,
            runner=runner,
            artifact_store=ArtifactStore(config.artifacts.directory),
            run_store=RunStore(config.state.directory, lock_timeout=config.state.lock_timeout_seconds),
            gate=ApprovalGate(config.approval.default_timeout_seconds),
            max_workers=config.runner.max_workers,
            retain_runs=config.state.retain_runs,
            poll_interval=config.approval.poll_interval,
            error_log_path=config.logging.error_log_path
        )
        runner.error_handler = engine.error_handler
        engine.register_pipeline(self.build_pipeline(config))
        return engine

    def save_config(self, config: PipelineConfig, output_path: str, format: str = "yaml") -> None:
        """
        Save configuration to file.

        Args:
            config: Configuration to save
            output_path: Output file path
            format: Output format ('yaml' or 'json')
        """
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        config_dict = config.model_dump(mode='json')

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
        """Get a default configuration template: test, build, deploy, gated production deploy."""
        return {
            "pipeline": {
                "name": "cicd_pipeline",
                "description": "Container delivery pipeline with a manual production gate",
                "stages": [
                    {
                        "name": "Source",
                        "actions": [
                            {
                                "name": "Checkout",
                                "capability": "SourceFetch",
                                "output_artifact": "source_output",
                                "configuration": {"ref": "master"}
                            }
                        ]
                    },
                    {
                        "name": "Code-Quality-Testing",
                        "actions": [
                            {
                                "name": "Unit-Test",
                                "capability": "Test",
                                "input_artifact": "source_output",
                                "output_artifact": "unit_test_output",
                                "build_spec": "make test",
                                "settings": {"compute_type": "LARGE", "privileged": True}
                            }
                        ]
                    },
                    {
                        "name": "Docker-Push",
                        "actions": [
                            {
                                "name": "Docker-Build",
                                "capability": "Build",
                                "input_artifact": "source_output",
                                "output_artifact": "docker_build_output",
                                "build_spec": "docker build -t $IMAGE_REPO_URI:$IMAGE_TAG . && docker push $IMAGE_REPO_URI:$IMAGE_TAG",
                                "environment": {
                                    "IMAGE_TAG": "latest",
                                    "IMAGE_REPO_URI": "${IMAGE_REPO_URI:registry.local/app}",
                                    "AWS_DEFAULT_REGION": "${AWS_DEFAULT_REGION:us-east-1}"
                                },
                                "settings": {"compute_type": "LARGE", "privileged": True}
                            }
                        ]
                    },
                    {
                        "name": "Deploy-Test",
                        "actions": [
                            {
                                "name": "Deploy-Test",
                                "capability": "Deploy",
                                "input_artifact": "docker_build_output",
                                "service_id": "app-test"
                            }
                        ]
                    },
                    {
                        "name": "Deploy-Production",
                        "actions": [
                            {
                                "name": "Approve-Deploy-Prod",
                                "capability": "ManualApproval",
                                "run_order": 1
                            },
                            {
                                "name": "Deploy-Prod",
                                "capability": "Deploy",
                                "input_artifact": "docker_build_output",
                                "service_id": "app-prod",
                                "run_order": 2
                            }
                        ]
                    }
                ]
            },
            "runner": {
                "max_retries": 3,
                "retry_delay": 1.0
            },
            "state": {
                "directory": ".cdflow/runs",
                "retain_runs": 10
            },
            "artifacts": {
                "directory": ".cdflow/artifacts"
            }
        }
