"""
Unit tests for configuration loading and validation.

Tests strict validation and error handling for audit configs.
"""

import os
import tempfile

import pytest
import yaml

from invocation_audit.config.loader import (
    AuditConfig,
    CorrelationConfig,
    UsageSourceConfig,
    default_audit_config,
    load_audit_config,
)
from invocation_audit.core.catalog import MetricDefinition
from invocation_audit.core.correlation import AnomalyPolicy


class TestConfigLoading:
    """Test configuration loading and validation."""
    
    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
    
    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)
    
    def _write_config(self, config_data, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path
    
    def _metrics(self):
        return [
            {"name": "functionCallDuration", "unit": "second", "price_per_unit": 0.0000083,
             "comment": "512MB"},
            {"name": "functionCallRequests", "unit": "request", "price_per_unit": 0.0000002},
        ]
    
    def test_valid_config_loads_correctly(self):
        """Test that a valid configuration loads correctly."""
        config_data = {
            "metrics": self._metrics(),
            "usage_sources": {
                "estimatedBilledTime": {"metric": "functionCallDuration", "divisor": 1000},
                "requests": {"metric": "functionCallRequests"}
            },
            "correlation": {
                "anomaly_policy": "strict",
                "deadline_seconds": 60,
                "progress_interval_seconds": 2,
                "token_pattern": "call #([0-9]+)",
                "token_type": "int"
            }
        }
        
        config_path = self._write_config(config_data)
        config = load_audit_config(config_path)
        
        # Verify metrics
        assert [m.name for m in config.metrics] == ["functionCallDuration", "functionCallRequests"]
        assert config.metrics[0].comment == "512MB"
        assert config.metrics[1].comment is None
        
        # Verify usage sources
        assert config.usage_sources["estimatedBilledTime"] == UsageSourceConfig(
            metric="functionCallDuration", divisor=1000.0
        )
        assert config.usage_sources["requests"].divisor == 1.0
        
        # Verify correlation
        assert config.correlation.anomaly_policy == AnomalyPolicy.STRICT
        assert config.correlation.deadline_seconds == 60.0
        assert config.correlation.progress_interval_seconds == 2.0
        assert config.correlation.build_matcher()("call #12") == 12
    
    def test_config_with_only_metrics_uses_defaults(self):
        """Test that optional sections fall back to defaults."""
        config_path = self._write_config({"metrics": self._metrics()})
        config = load_audit_config(config_path)
        
        assert config.usage_sources == {}
        assert config.correlation == CorrelationConfig()
        assert config.correlation.anomaly_policy == AnomalyPolicy.RECORD
    
    def test_build_catalog_preserves_order(self):
        """Test the catalog is built frozen and in file order."""
        config = load_audit_config(self._write_config({"metrics": self._metrics()}))
        catalog = config.build_catalog()
        assert catalog.frozen
        assert catalog.names() == ["functionCallDuration", "functionCallRequests"]
    
    def test_string_tokens(self):
        """Test token_type str leaves captured tokens as text."""
        config_data = {
            "metrics": self._metrics(),
            "correlation": {"token_pattern": "(console\\.\\w+) works", "token_type": "str"}
        }
        config = load_audit_config(self._write_config(config_data))
        assert config.correlation.build_matcher()("console.info works") == "console.info"
    
    def test_missing_file_raises_error(self):
        """Test that missing config file raises error."""
        with pytest.raises(FileNotFoundError, match="Audit config file not found"):
            load_audit_config("nonexistent.yaml")
    
    def test_empty_config_raises_error(self):
        """Test that empty config file raises error."""
        config_path = self._write_config({})
        
        with pytest.raises(ValueError, match="Configuration file is empty"):
            load_audit_config(config_path)
    
    def test_invalid_yaml_raises_error(self):
        """Test that invalid YAML raises error."""
        config_path = os.path.join(self.temp_dir, "invalid.yaml")
        with open(config_path, 'w') as f:
            f.write("invalid: yaml: content: [")
        
        with pytest.raises(yaml.YAMLError):
            load_audit_config(config_path)
    
    def test_non_mapping_config_raises_error(self):
        """Test that a top-level list is rejected."""
        config_path = self._write_config(["metrics"])
        with pytest.raises(ValueError, match="must be a dictionary"):
            load_audit_config(config_path)
    
    def test_missing_metrics_raises_error(self):
        """Test that missing metrics section raises error."""
        config_path = self._write_config({"correlation": {}})
        with pytest.raises(ValueError, match="Missing required 'metrics' section"):
            load_audit_config(config_path)
    
    def test_unknown_top_level_key_raises_error(self):
        """Test that unknown top-level keys are rejected."""
        config_path = self._write_config({"metrics": self._metrics(), "budget": {}})
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_audit_config(config_path)
    
    def test_empty_metrics_raises_error(self):
        """Test that an empty metrics list is rejected."""
        config_path = self._write_config({"metrics": []})
        with pytest.raises(ValueError, match="non-empty list"):
            load_audit_config(config_path)
    
    def test_metric_missing_unit_raises_error(self):
        """Test that metrics require a unit."""
        config_path = self._write_config({
            "metrics": [{"name": "requests", "price_per_unit": 0.1}]
        })
        with pytest.raises(ValueError, match="Missing required 'unit' in metrics\\[0\\]"):
            load_audit_config(config_path)
    
    def test_unknown_metric_key_raises_error(self):
        """Test that unknown keys inside a metric are rejected."""
        config_path = self._write_config({
            "metrics": [{"name": "requests", "unit": "count", "price_per_unit": 0.1, "tier": 2}]
        })
        with pytest.raises(ValueError, match="Unknown keys in metrics\\[0\\]"):
            load_audit_config(config_path)
    
    @pytest.mark.parametrize("price", [0, -1, "free", True])
    def test_invalid_price_raises_error(self, price):
        """Test that prices must be positive numbers."""
        config_path = self._write_config({
            "metrics": [{"name": "requests", "unit": "count", "price_per_unit": price}]
        })
        with pytest.raises(ValueError, match="'price_per_unit' in metrics\\[0\\] must be > 0"):
            load_audit_config(config_path)
    
    def test_duplicate_metric_raises_error(self):
        """Test that duplicate metric names are rejected."""
        metric = {"name": "requests", "unit": "count", "price_per_unit": 0.1}
        config_path = self._write_config({"metrics": [metric, dict(metric)]})
        with pytest.raises(ValueError, match="Duplicate metric name"):
            load_audit_config(config_path)
    
    def test_usage_source_unknown_metric_raises_error(self):
        """Test that usage sources must map to configured metrics."""
        config_path = self._write_config({
            "metrics": self._metrics(),
            "usage_sources": {"outboundBytes": {"metric": "outboundDataTransfer"}}
        })
        with pytest.raises(ValueError, match="unknown metric 'outboundDataTransfer'"):
            load_audit_config(config_path)
    
    def test_usage_source_invalid_divisor_raises_error(self):
        """Test that divisors must be positive."""
        config_path = self._write_config({
            "metrics": self._metrics(),
            "usage_sources": {"requests": {"metric": "functionCallRequests", "divisor": 0}}
        })
        with pytest.raises(ValueError, match="'divisor' in usage_sources.requests must be > 0"):
            load_audit_config(config_path)
    
    def test_invalid_anomaly_policy_raises_error(self):
        """Test that invalid anomaly policies raise errors."""
        config_path = self._write_config({
            "metrics": self._metrics(),
            "correlation": {"anomaly_policy": "explode"}
        })
        with pytest.raises(ValueError, match="'anomaly_policy' in correlation must be one of"):
            load_audit_config(config_path)
    
    def test_anomaly_policy_case_insensitive(self):
        """Test that policy names ignore case."""
        config_path = self._write_config({
            "metrics": self._metrics(),
            "correlation": {"anomaly_policy": "STRICT"}
        })
        assert load_audit_config(config_path).correlation.anomaly_policy == AnomalyPolicy.STRICT
    
    def test_invalid_deadline_raises_error(self):
        """Test that deadlines must be positive numbers."""
        for value in [0, "soon"]:
            config_path = self._write_config({
                "metrics": self._metrics(),
                "correlation": {"deadline_seconds": value}
            })
            with pytest.raises(ValueError, match="deadline_seconds"):
                load_audit_config(config_path)
    
    def test_token_pattern_needs_one_group(self):
        """Test that token patterns without a capture group are rejected."""
        config_path = self._write_config({
            "metrics": self._metrics(),
            "correlation": {"token_pattern": "Executed call [0-9]+"}
        })
        with pytest.raises(ValueError, match="capture group"):
            load_audit_config(config_path)
    
    def test_unknown_correlation_key_raises_error(self):
        """Test that unknown correlation keys are rejected."""
        config_path = self._write_config({
            "metrics": self._metrics(),
            "correlation": {"retries": 3}
        })
        with pytest.raises(ValueError, match="Unknown keys in correlation"):
            load_audit_config(config_path)


class TestDefaultConfig:
    """Test the built-in configuration."""
    
    def test_default_config_is_consistent(self):
        """Test every default usage source maps to a default metric."""
        config = default_audit_config()
        names = {m.name for m in config.metrics}
        assert all(source.metric in names for source in config.usage_sources.values())
        assert config.usage_sources["estimatedBilledTime"].divisor == 1000
    
    def test_audit_config_validates_sources(self):
        """Test AuditConfig itself rejects dangling usage sources."""
        with pytest.raises(ValueError, match="unknown metric"):
            AuditConfig(
                metrics=(MetricDefinition("requests", "count", 0.1),),
                usage_sources={"bytes": UsageSourceConfig(metric="transfer")}
            )
    
    def test_correlation_config_validation(self):
        """Test CorrelationConfig validates its fields."""
        with pytest.raises(ValueError, match="progress_interval_seconds"):
            CorrelationConfig(progress_interval_seconds=0)
        with pytest.raises(ValueError, match="token_type"):
            CorrelationConfig(token_type="float")
