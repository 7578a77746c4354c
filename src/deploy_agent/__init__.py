"""Webhook deploy agent - receives signed bundles and promotes them as releases."""

__version__ = "0.1.0"

from deploy_agent.core.config import Settings, TargetRegistry
from deploy_agent.core.models import ReleaseManifest, Target

__all__ = ["Settings", "TargetRegistry", "Target", "ReleaseManifest", "__version__"]
