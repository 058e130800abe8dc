"""
This module defines the data structures for our configuration.
config.yaml is parsed into these dataclasses and validated before any
resource is declared.
"""

import os
import yaml
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from bundle import DEFAULT_EXCLUDES, merge_excludes, paths_overlap
from exceptions import ConfigurationError

BASIC_EXECUTION_POLICY_ARN = "arn:aws:iam::aws:policy/service-role/AWSLambdaBasicExecutionRole"
REQUIRED_KEYS = ["team", "service", "environment", "region"]
REQUIRED_LAMBDA_KEYS = ["name", "source_dir", "handler"]


@dataclass
class LambdaFunctionConfig:
    name: str
    source_dir: str
    handler: str
    runtime: str = "python3.12"
    requirements: str = "requirements.txt"
    exclude: List[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDES))
    timeout: int = 30
    memory_size: int = 128
    architectures: List[str] = field(default_factory=lambda: ["x86_64"])
    description: Optional[str] = None
    environment: Dict[str, Any] = field(default_factory=dict)
    policy_arns: List[str] = field(default_factory=lambda: [BASIC_EXECUTION_POLICY_ARN])
    inline_policy: Optional[Dict[str, Any]] = None
    role_arn: Optional[str] = None
    log_retention_days: Optional[int] = None
    pip_args: List[str] = field(default_factory=list)
    custom_name: Optional[str] = None
    tags: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LambdaFunctionConfig":
        if not isinstance(data, dict):
            raise ConfigurationError(f"Lambda entry must be a mapping, got: {data!r}")
        for key in REQUIRED_LAMBDA_KEYS:
            if not data.get(key):
                raise ConfigurationError(
                    f"Missing required lambda configuration key: {key}", key=key
                )

        known = set(cls.__dataclass_fields__)
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(
                f"Unknown keys for lambda '{data['name']}': {sorted(unknown)}"
            )

        values = {key: value for key, value in data.items() if value is not None}
        # .touch and the Makefile never ship, whatever the user lists
        values["exclude"] = merge_excludes(values.get("exclude"))

        lambda_config = cls(**values)
        lambda_config.validate()
        return lambda_config

    def validate(self):
        if not 1 <= int(self.timeout) <= 900:
            raise ConfigurationError(
                f"timeout for '{self.name}' must be between 1 and 900 seconds, got: {self.timeout}",
                key="timeout",
            )
        if not 128 <= int(self.memory_size) <= 10240:
            raise ConfigurationError(
                f"memory_size for '{self.name}' must be between 128 and 10240 MB, got: {self.memory_size}",
                key="memory_size",
            )
        if self.log_retention_days is not None and int(self.log_retention_days) <= 0:
            raise ConfigurationError(
                f"log_retention_days for '{self.name}' must be positive",
                key="log_retention_days",
            )


@dataclass
class Config:
    team: str
    service: str
    environment: str
    region: str
    tags: Dict[str, str] = field(default_factory=dict)
    build_dir: str = "build"
    lambdas: List[LambdaFunctionConfig] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base_dir: Optional[str] = None) -> "Config":
        if not isinstance(data, dict):
            raise ConfigurationError("Configuration must be a YAML mapping")

        # Ensure required keys exist
        for key in REQUIRED_KEYS:
            if key not in data:
                raise ConfigurationError(f"Missing required configuration key: {key}", key=key)

        lambdas_data = data.get("lambdas") or []
        if not lambdas_data:
            raise ConfigurationError("At least one entry under 'lambdas' is required", key="lambdas")

        lambdas = [LambdaFunctionConfig.from_dict(item) for item in lambdas_data]
        seen = set()
        for lambda_config in lambdas:
            if lambda_config.name in seen:
                raise ConfigurationError(f"Duplicate lambda name: {lambda_config.name}", key="lambdas")
            seen.add(lambda_config.name)

        build_dir = data.get("build_dir") or "build"
        base_dir = base_dir or "."
        for lambda_config in lambdas:
            staging_dir = os.path.join(base_dir, build_dir, lambda_config.name)
            if paths_overlap(os.path.join(base_dir, lambda_config.source_dir), staging_dir):
                raise ConfigurationError(
                    f"build_dir '{build_dir}' overlaps source_dir '{lambda_config.source_dir}' "
                    f"of lambda '{lambda_config.name}'",
                    key="build_dir",
                )

        return cls(
            team=str(data["team"]),
            service=str(data["service"]),
            environment=str(data["environment"]),
            region=str(data["region"]),
            tags=data.get("tags") or {},
            build_dir=build_dir,
            lambdas=lambdas,
        )

    def get_lambda(self, name: str) -> LambdaFunctionConfig:
        for lambda_config in self.lambdas:
            if lambda_config.name == name:
                return lambda_config
        raise ConfigurationError(f"No lambda named '{name}' in configuration")


def load_config(file_path: str) -> Config:
    """Load and validate YAML configuration from the given file path."""
    try:
        with open(file_path, "r") as file:
            config_data = yaml.safe_load(file)
    except FileNotFoundError:
        raise ConfigurationError(f"Configuration file not found: {file_path}")
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {file_path}: {e}")

    return Config.from_dict(config_data, base_dir=os.path.dirname(os.path.abspath(file_path)))
