"""
Fleet Demand Controller

Keeps the number of active workers across many backend hosts tracking a
time-varying demand target, ramping gradually instead of in bursts.
"""

from .gateway import HostGateway, RemoteCallFailed, DiscoveryFailure, extract_worker_names
from .inventory import (
    Worker, WorkerAction, FleetInventory, CandidateSampler,
    discover, enumerate_workers, force_assignment
)
from .demand import DemandSample, DemandSource, DemandSampler, SampleUnavailable, count_paginated
from .policies import (
    PolicyType, PolicyInputs, ScalingDecision, ScalingPolicy, TargetPolicy,
    HourlyCurvePolicy, SinusoidalPolicy, PeakDipPolicy, DemandProportionalPolicy,
    create_policy
)
from .cycle_state import CyclePhase, PhaseTransition, PhaseValidator, PhaseTransitionError, CycleStateTracker
from .scheduler import (
    RampScheduler, RampOperation, CycleReport, CycleOverlap,
    compute_pacing_interval, plan_operations
)
from .config import (
    ConfigManager, FleetControllerConfig, HostConfig, HourlyCurveConfig,
    SinusoidalConfig, PeakDipConfig, DemandConfig, LoggingConfig, HttpConfig,
    ConfigError, parse_duration, load_config_from_file,
    load_config_with_env_override, create_default_config_file
)

__version__ = "0.1.0"

__all__ = [
    "HostGateway",
    "RemoteCallFailed",
    "DiscoveryFailure",
    "extract_worker_names",
    "Worker",
    "WorkerAction",
    "FleetInventory",
    "CandidateSampler",
    "discover",
    "enumerate_workers",
    "force_assignment",
    "DemandSample",
    "DemandSource",
    "DemandSampler",
    "SampleUnavailable",
    "count_paginated",
    "PolicyType",
    "PolicyInputs",
    "ScalingDecision",
    "ScalingPolicy",
    "TargetPolicy",
    "HourlyCurvePolicy",
    "SinusoidalPolicy",
    "PeakDipPolicy",
    "DemandProportionalPolicy",
    "create_policy",
    "CyclePhase",
    "PhaseTransition",
    "PhaseValidator",
    "PhaseTransitionError",
    "CycleStateTracker",
    "RampScheduler",
    "RampOperation",
    "CycleReport",
    "CycleOverlap",
    "compute_pacing_interval",
    "plan_operations",
    "ConfigManager",
    "FleetControllerConfig",
    "HostConfig",
    "HourlyCurveConfig",
    "SinusoidalConfig",
    "PeakDipConfig",
    "DemandConfig",
    "LoggingConfig",
    "HttpConfig",
    "ConfigError",
    "parse_duration",
    "load_config_from_file",
    "load_config_with_env_override",
    "create_default_config_file",
]
