"""Configuration management for the clusterreg application."""
import os
from dotenv import load_dotenv

# Load environment variables from .env file if it exists
load_dotenv()

class Config:
    """Application configuration with sensible defaults."""

    # Kubernetes
    KUBECONFIG: str = os.getenv("KUBECONFIG", "")
    NAMESPACE: str = os.getenv("CLUSTERREG_NAMESPACE", "argocd")
    SETTINGS_CONFIGMAP: str = os.getenv("CLUSTERREG_SETTINGS_CONFIGMAP", "argocd-cm")

    # Record naming
    SECRET_PREFIX: str = os.getenv("CLUSTERREG_SECRET_PREFIX", "cluster")

    # Timeouts (in seconds)
    API_TIMEOUT: int = int(os.getenv("API_TIMEOUT", "30"))
    WATCH_TIMEOUT: int = int(os.getenv("CLUSTERREG_WATCH_TIMEOUT", "30"))
    WATCH_POLL: float = float(os.getenv("CLUSTERREG_WATCH_POLL", "0.5"))

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
    LOG_FORMAT: str = os.getenv(
        "LOG_FORMAT",
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    # HTTP API
    API_KEY: str = os.getenv("CLUSTERREG_API_KEY", "")

    # CLI plugins
    PLUGIN_PREFIXES: tuple = tuple(
        p for p in os.getenv("CLUSTERREG_PLUGIN_PREFIXES", "clusterreg").split(",") if p
    )

    # Security
    REDACT_KEYS: tuple = ("password", "bearertoken", "keydata", "secret", "token")

    @classmethod
    def validate(cls) -> None:
        """Validate required configuration."""
        required = {
            "CLUSTERREG_NAMESPACE": cls.NAMESPACE,
            "CLUSTERREG_SECRET_PREFIX": cls.SECRET_PREFIX,
        }
        missing = [k for k, v in required.items() if not v]
        if missing:
            raise ValueError(f"Missing required configuration: {', '.join(missing)}")
        if cls.WATCH_TIMEOUT <= 0:
            raise ValueError("CLUSTERREG_WATCH_TIMEOUT must be positive")

# Don't validate on import to allow for dynamic configuration
# Call Config.validate() explicitly when needed
