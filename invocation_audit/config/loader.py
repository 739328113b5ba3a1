"""
Configuration management and loading.

Handles the metric price list, the mapping from fabric statistics onto
metrics, and correlation settings.
"""

import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import yaml

from invocation_audit.core.catalog import (
    MetricCatalog,
    MetricDefinition,
    build_default_catalog,
)
from invocation_audit.core.correlation import AnomalyPolicy
from invocation_audit.core.matcher import RegexTokenMatcher

DEFAULT_TOKEN_PATTERN = r"Executed call ([0-9]+)\b"


@dataclass(frozen=True)
class UsageSourceConfig:
    """Maps one fabric statistic onto a catalog metric."""
    metric: str
    divisor: float = 1.0

    def __post_init__(self):
        """Validate divisor is positive."""
        if not math.isfinite(self.divisor) or self.divisor <= 0:
            raise ValueError(f"divisor for metric '{self.metric}' must be > 0")


@dataclass(frozen=True)
class CorrelationConfig:
    """Settings for log correlation windows."""
    anomaly_policy: AnomalyPolicy = AnomalyPolicy.RECORD
    deadline_seconds: float = 30.0
    progress_interval_seconds: float = 1.0
    token_pattern: str = DEFAULT_TOKEN_PATTERN
    token_type: str = "int"

    def __post_init__(self):
        """Validate timing values and token settings."""
        if self.deadline_seconds <= 0:
            raise ValueError("deadline_seconds must be > 0")
        if self.progress_interval_seconds <= 0:
            raise ValueError("progress_interval_seconds must be > 0")
        if self.token_type not in ("int", "str"):
            raise ValueError("token_type must be one of: ['int', 'str']")
        # Fails on a pattern without exactly one capture group
        self.build_matcher()

    def build_matcher(self) -> RegexTokenMatcher:
        convert = int if self.token_type == "int" else None
        return RegexTokenMatcher(self.token_pattern, convert=convert)


@dataclass(frozen=True)
class AuditConfig:
    """Complete audit configuration."""
    metrics: Tuple[MetricDefinition, ...]
    usage_sources: Dict[str, UsageSourceConfig] = field(default_factory=dict)
    correlation: CorrelationConfig = field(default_factory=CorrelationConfig)

    def __post_init__(self):
        """Validate usage sources point at configured metrics."""
        names = {metric.name for metric in self.metrics}
        for source, mapping in self.usage_sources.items():
            if mapping.metric not in names:
                raise ValueError(
                    f"usage source '{source}' maps to unknown metric '{mapping.metric}'"
                )

    def build_catalog(self) -> MetricCatalog:
        """A frozen catalog holding the configured metrics in order."""
        return MetricCatalog(list(self.metrics)).freeze()


DEFAULT_USAGE_SOURCES = {
    "estimatedBilledTime": UsageSourceConfig(metric="functionCallDuration", divisor=1000),
    "requests": UsageSourceConfig(metric="functionCallRequests"),
    "queueMessages": UsageSourceConfig(metric="queueMessages"),
    "outboundBytes": UsageSourceConfig(metric="outboundDataTransfer", divisor=2 ** 30),
}


def default_audit_config(memory_size_mb: int = 512) -> AuditConfig:
    """Configuration matching the reference price list."""
    return AuditConfig(
        metrics=build_default_catalog(memory_size_mb).definitions(),
        usage_sources=dict(DEFAULT_USAGE_SOURCES),
    )


def load_audit_config(path: str) -> AuditConfig:
    """Load and validate audit configuration from a YAML file.
    
    Args:
        path: Path to YAML configuration file
        
    Returns:
        Validated AuditConfig object
        
    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Audit config file not found: {path}")
    
    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")
    
    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")
    
    allowed_top_keys = {'metrics', 'usage_sources', 'correlation'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")
    
    if 'metrics' not in raw_config:
        raise ValueError("Missing required 'metrics' section")
    metrics = _parse_metrics(raw_config['metrics'])
    
    sources_data = raw_config.get('usage_sources') or {}
    if not isinstance(sources_data, dict):
        raise ValueError("'usage_sources' must be a dictionary")
    usage_sources = {
        name: _parse_usage_source(data, f"usage_sources.{name}")
        for name, data in sources_data.items()
    }
    
    correlation_data = raw_config.get('correlation') or {}
    if not isinstance(correlation_data, dict):
        raise ValueError("'correlation' must be a dictionary")
    correlation = _parse_correlation(correlation_data)
    
    return AuditConfig(
        metrics=metrics,
        usage_sources=usage_sources,
        correlation=correlation
    )


def _parse_metrics(data: object) -> Tuple[MetricDefinition, ...]:
    """Parse the metric list, rejecting duplicates."""
    if not isinstance(data, list) or not data:
        raise ValueError("'metrics' must be a non-empty list")
    
    allowed_keys = {'name', 'unit', 'price_per_unit', 'comment'}
    metrics: List[MetricDefinition] = []
    seen = set()
    for i, item in enumerate(data):
        path = f"metrics[{i}]"
        if not isinstance(item, dict):
            raise ValueError(f"{path} must be a dictionary")
        unknown_keys = set(item.keys()) - allowed_keys
        if unknown_keys:
            raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
        for key in ('name', 'unit', 'price_per_unit'):
            if key not in item:
                raise ValueError(f"Missing required '{key}' in {path}")
        
        price = item['price_per_unit']
        if isinstance(price, bool) or not isinstance(price, (int, float)) or price <= 0:
            raise ValueError(f"'price_per_unit' in {path} must be > 0")
        
        name = str(item['name'])
        if name in seen:
            raise ValueError(f"Duplicate metric name in {path}: {name}")
        seen.add(name)
        
        comment: Optional[str] = item.get('comment')
        metrics.append(MetricDefinition(
            name=name,
            unit=str(item['unit']),
            price_per_unit=float(price),
            comment=str(comment) if comment is not None else None
        ))
    return tuple(metrics)


def _parse_usage_source(data: object, path: str) -> UsageSourceConfig:
    """Parse one usage source mapping."""
    if not isinstance(data, dict):
        raise ValueError(f"{path} must be a dictionary")
    allowed_keys = {'metric', 'divisor'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
    if 'metric' not in data:
        raise ValueError(f"Missing required 'metric' in {path}")
    
    divisor = data.get('divisor', 1.0)
    if isinstance(divisor, bool) or not isinstance(divisor, (int, float)) or not divisor > 0:
        raise ValueError(f"'divisor' in {path} must be > 0")
    
    return UsageSourceConfig(metric=str(data['metric']), divisor=float(divisor))


def _parse_correlation(data: Dict) -> CorrelationConfig:
    """Parse correlation settings, filling in defaults."""
    allowed_keys = {
        'anomaly_policy', 'deadline_seconds', 'progress_interval_seconds',
        'token_pattern', 'token_type'
    }
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in correlation: {unknown_keys}")
    
    defaults = CorrelationConfig()
    
    policy_str = data.get('anomaly_policy', defaults.anomaly_policy.value)
    if not isinstance(policy_str, str):
        raise ValueError("'anomaly_policy' in correlation must be a string")
    try:
        policy = AnomalyPolicy(policy_str.lower())
    except ValueError:
        valid_policies = [policy.value for policy in AnomalyPolicy]
        raise ValueError(f"'anomaly_policy' in correlation must be one of: {valid_policies}")
    
    for key in ('deadline_seconds', 'progress_interval_seconds'):
        value = data.get(key)
        if value is not None and (isinstance(value, bool) or not isinstance(value, (int, float))):
            raise ValueError(f"'{key}' in correlation must be a number")
    
    try:
        return CorrelationConfig(
            anomaly_policy=policy,
            deadline_seconds=float(data.get('deadline_seconds', defaults.deadline_seconds)),
            progress_interval_seconds=float(
                data.get('progress_interval_seconds', defaults.progress_interval_seconds)
            ),
            token_pattern=str(data.get('token_pattern', defaults.token_pattern)),
            token_type=str(data.get('token_type', defaults.token_type)),
        )
    except ValueError as e:
        raise ValueError(f"Invalid correlation settings: {e}")
