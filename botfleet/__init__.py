"""
ASF bot fleet controller

Binds the fleet_control library to ArchiSteamFarm IPC hosts and a
Supabase demand signal, and exposes it as the ``botfleet`` CLI.
"""

from .asf_gateway import ASFGateway
from .supabase_source import SupabaseDemandSource
from .service import FleetService, build_service, create_gateway, create_demand_source
from .logger import FleetLogger, get_logger

__version__ = "0.1.0"

__all__ = [
    "ASFGateway",
    "SupabaseDemandSource",
    "FleetService",
    "build_service",
    "create_gateway",
    "create_demand_source",
    "FleetLogger",
    "get_logger",
]
