"""
Wiring of configuration, gateway, demand source and control loop.
"""
import random
from dataclasses import dataclass
from typing import Optional

from fleet_control.config import FleetControllerConfig
from fleet_control.demand import DemandSampler, DemandSource
from fleet_control.gateway import HostGateway
from fleet_control.inventory import FleetInventory, discover
from fleet_control.policies import ScalingPolicy, create_policy
from fleet_control.scheduler import RampScheduler

from .asf_gateway import ASFGateway
from .logger import get_logger
from .supabase_source import SupabaseDemandSource


@dataclass
class FleetService:
    """A discovered fleet and the scheduler driving it"""
    config: FleetControllerConfig
    gateway: HostGateway
    policy: ScalingPolicy
    inventory: FleetInventory
    scheduler: RampScheduler
    sampler: Optional[DemandSampler] = None

    def close(self) -> None:
        self.scheduler.stop()
        self.gateway.close()


def create_gateway(config: FleetControllerConfig) -> ASFGateway:
    return ASFGateway(config.hosts, timeout=config.http.timeout)


def create_demand_source(config: FleetControllerConfig) -> Optional[DemandSource]:
    """Supabase source when credentials are configured, otherwise None"""
    if not config.demand.url or not config.demand.key:
        return None
    return SupabaseDemandSource.from_config(config.demand)


def build_service(config: FleetControllerConfig,
                  gateway: Optional[HostGateway] = None,
                  demand_source: Optional[DemandSource] = None,
                  rng: Optional[random.Random] = None) -> FleetService:
    """
    Discover the fleet and assemble a ready-to-run scheduler.

    Discovery forces the hosts into a randomized initial split, so this
    issues start/stop calls.

    Raises:
        ValueError: If the policy needs a demand source and none is available
    """
    logger = get_logger()
    rng = rng or random.Random()

    policy = create_policy(config)
    gateway = gateway or create_gateway(config)

    if demand_source is None:
        demand_source = create_demand_source(config)

    if policy.requires_demand and demand_source is None:
        raise ValueError(f"Policy '{policy.name}' requires a demand source; configure demand.url and demand.key")

    sampler = DemandSampler(demand_source) if demand_source is not None else None

    logger.host_info(f"Discovering workers on {gateway.host_count} hosts")
    inventory = discover(
        gateway,
        rng=rng,
        shuffle=config.randomize_initial_split,
        batch_size=config.batch_size,
        max_workers=config.discovery_workers,
    )
    logger.success(f"Fleet discovered: {inventory.running_count} running, {inventory.disabled_count} disabled")

    scheduler = RampScheduler(
        inventory=inventory,
        gateway=gateway,
        policy=policy,
        cycle_period=config.cycle_period_seconds,
        sampler=sampler,
        batch_size=config.batch_size,
        tz=config.tzinfo,
        rng=rng,
    )
    logger.policy_info(f"Policy '{policy.name}', max {config.max_workers} workers, "
                       f"cycle every {config.cycle_period}")

    return FleetService(
        config=config,
        gateway=gateway,
        policy=policy,
        inventory=inventory,
        scheduler=scheduler,
        sampler=sampler,
    )
