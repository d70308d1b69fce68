"""
Operator configuration using Pydantic Settings.
Loads configuration from environment variables with validation.
"""
from typing import Optional
from pydantic import Field, RedisDsn, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Main operator settings with environment variable loading."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="MongoDB Cluster Operator", description="Application name")
    app_version: str = Field(default="0.1.0", description="Application version")
    environment: str = Field(default="development", description="Environment (development/staging/production/testing)")
    log_level: str = Field(default="INFO", description="Logging level")

    # Health / metrics server
    host: str = Field(default="0.0.0.0", description="Health server host")
    port: int = Field(default=8081, ge=1, le=65535, description="Health server port")
    prometheus_enabled: bool = Field(default=True, description="Expose Prometheus metrics on /metrics")

    # Kubernetes
    kubeconfig_path: Optional[str] = Field(
        default=None, description="Path to kubeconfig file (None for in-cluster or default location)"
    )
    k8s_in_cluster: bool = Field(default=False, description="Running inside Kubernetes cluster")
    watch_namespace: str = Field(default="", description="Namespace to watch (empty for all namespaces)")
    cluster_domain: str = Field(default="cluster.local", description="Kubernetes cluster DNS domain")

    # Custom resource
    crd_group: str = Field(default="database.sadegh.msm", description="MongoDBCluster API group")
    crd_version: str = Field(default="v1alpha1", description="MongoDBCluster API version")
    crd_plural: str = Field(default="mongodbclusters", description="MongoDBCluster plural name")
    crd_kind: str = Field(default="MongoDBCluster", description="MongoDBCluster kind")

    # Images
    mongo_image_repository: str = Field(default="mongo", description="Image repository for mongod/mongos")
    backup_image: str = Field(default="sadegh81/mongo-aws:latest", description="Image with mongodump and aws cli")

    # Replica set bootstrap bounds
    member_probe_timeout_seconds: float = Field(
        default=5.0, gt=0, le=60, description="Per-member reachability timeout"
    )
    primary_poll_interval_seconds: float = Field(
        default=2.0, gt=0, le=30, description="Interval between primary election checks"
    )
    primary_election_timeout_seconds: float = Field(
        default=30.0, gt=0, le=600, description="Total time to wait for a primary after initiation"
    )

    # Reconciliation
    reconcile_timeout_seconds: float = Field(
        default=600.0, gt=0, description="Deadline for a single reconciliation pass"
    )
    resync_interval_seconds: int = Field(
        default=300, ge=10, le=3600, description="Interval between full resyncs of all clusters"
    )
    max_concurrent_reconciles: int = Field(
        default=4, ge=1, le=64, description="Number of cluster objects reconciled concurrently"
    )
    requeue_base_delay_seconds: float = Field(default=5.0, gt=0, description="Initial requeue delay after a failed pass")
    requeue_max_delay_seconds: float = Field(default=300.0, gt=0, description="Maximum requeue delay")
    watch_timeout_seconds: int = Field(default=300, ge=10, description="Server-side timeout for watch requests")

    # Leader election (optional, enabled when redis_url is set)
    redis_url: Optional[RedisDsn] = Field(default=None, description="Redis connection URL for leader election")
    redis_max_connections: int = Field(default=10, ge=1, le=100, description="Redis max connections")
    leader_lease_seconds: int = Field(default=30, ge=5, le=300, description="Leader lease duration")

    # Sentry
    sentry_dsn: Optional[str] = Field(default=None, description="Sentry DSN for error tracking")
    sentry_traces_sample_rate: float = Field(
        default=0.1, ge=0.0, le=1.0, description="Sentry traces sample rate"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v.upper()

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment."""
        valid_envs = ["development", "staging", "production", "testing"]
        if v.lower() not in valid_envs:
            raise ValueError(f"Environment must be one of {valid_envs}")
        return v.lower()

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"

    @property
    def leader_election_enabled(self) -> bool:
        """Leader election runs only when a Redis URL is configured."""
        return self.redis_url is not None


# Global settings instance
settings = Settings()
