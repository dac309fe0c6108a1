from .models import (
    Capacity, DeploymentMode, Step, RegionConfig, Stack, AppConfig, RunConfig, PipelineResult
)
from .errors import (
    DeploymentError, ConfigurationError, DeploymentTimeout, ProviderError, AlreadyExistsError,
    ResourceNotFoundError
)
from .deployer import Deployer
from .pipeline import Pipeline
from .manifest import load_manifest, parse_manifest
from .simulator import SimulatedCloud, FailureInjector

__all__ = [
    "Capacity", "DeploymentMode", "Step", "RegionConfig", "Stack", "AppConfig",
    "RunConfig", "PipelineResult",
    "DeploymentError", "ConfigurationError", "DeploymentTimeout", "ProviderError",
    "AlreadyExistsError", "ResourceNotFoundError",
    "Deployer", "Pipeline", "load_manifest", "parse_manifest",
    "SimulatedCloud", "FailureInjector"
]
