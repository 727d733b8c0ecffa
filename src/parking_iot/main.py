"""Main application entry point."""

import asyncio
import logging
import random
import signal
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Callable, Optional

import uvicorn
from fastapi import FastAPI

from .api.router import init_router, router
from .config import AppConfig, get_config_path, load_config
from .device.gateway import Gateway
from .device.lock import ParkingLock
from .protocol.transport import InMemoryBroker, Transport
from .state.authority import ReservationAuthority
from .state.store import InMemoryStore
from .state.sweeper import ExpirationSweeper

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Global state
config: AppConfig | None = None
authority: ReservationAuthority | None = None
sweeper: ExpirationSweeper | None = None
transports: list[Transport] = []
gateways: list[Gateway] = []


def load_app_config(path: Optional[Path] = None) -> AppConfig:
    """Load the YAML config, or fall back to built-in defaults."""
    config_path = path or get_config_path()
    if config_path.exists():
        logger.info(f"Loaded configuration from {config_path}")
        return load_config(config_path)

    logger.warning(f"Configuration file not found: {config_path}, using defaults")
    return AppConfig()


def create_transport(cfg: AppConfig, client_id: Optional[str] = None) -> Transport:
    """Build the configured transport."""
    if cfg.mqtt.transport == "mqtt":
        from .protocol.mqtt_transport import MQTTTransport

        return MQTTTransport(cfg.mqtt, client_id=client_id)
    return InMemoryBroker()


def build_gateways(cfg: AppConfig, transport_for: Callable[[str], Transport]) -> list[Gateway]:
    """
    Create simulated gateways and locks from the simulation settings.

    Locks are taken from the seeded slots of each gateway so that lock ids
    line up with the authority's slot records; a gateway without seeded
    slots gets locks_per_gateway generated ids.
    """
    sim = cfg.simulation
    rng = random.Random(sim.seed)
    lock_ids: dict[str, list[str]] = {gateway_id: [] for gateway_id in sim.gateways}
    for lot in cfg.lots:
        for slot in lot.slots:
            if slot.gateway_id in lock_ids:
                lock_ids[slot.gateway_id].append(slot.lock_id)

    result = []
    for gateway_id, ids in lock_ids.items():
        if not ids:
            ids = [f"lock_{gateway_id}_{n}" for n in range(1, sim.locks_per_gateway + 1)]
        locks = [
            ParkingLock(
                lock_id,
                gateway_id,
                arm_motion_seconds=sim.arm_motion_seconds,
                sensor_interval=sim.sensor_interval,
                behaviour_interval=sim.behaviour_interval,
                rng=random.Random(rng.random()),
            )
            for lock_id in ids
        ]
        result.append(
            Gateway(
                gateway_id,
                transport_for(gateway_id),
                locks,
                heartbeat_interval=sim.heartbeat_interval,
            )
        )
    return result


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global config, authority, sweeper, transports, gateways

    logger.info("Starting Smart Parking service...")

    config = load_app_config()

    transport = create_transport(config)
    await transport.start()
    transports = [transport]

    store = InMemoryStore(
        sensor_retention=config.authority.sensor_retention,
        log_retention=config.authority.log_retention,
    )
    authority = ReservationAuthority(
        store,
        transport,
        ack_timeout=config.authority.ack_timeout,
        heartbeat_timeout=config.authority.heartbeat_timeout,
        default_duration_minutes=config.authority.default_duration_minutes,
    )
    authority.load_lots(config.lots)
    authority.log_event("System Startup", "Smart Parking IoT System starting up...")
    await authority.start()

    init_router(authority)

    sweeper = ExpirationSweeper(authority, config.authority.sweep_interval)
    sweeper.start()

    # Start simulated gateways
    if config.simulation.enabled:
        if config.mqtt.transport == "memory":
            gateways = build_gateways(config, lambda gateway_id: transport)
        else:
            gateways = build_gateways(
                config,
                lambda gateway_id: create_transport(config, client_id=f"gateway_{gateway_id}"),
            )
            for gateway in gateways:
                await gateway.transport.start()
                transports.append(gateway.transport)

        for gateway in gateways:
            await gateway.start()
        logger.info(f"Started {len(gateways)} simulated gateway(s)")
    else:
        logger.info("Gateway simulation disabled")

    logger.info(f"Smart Parking service ready on http://{config.api.host}:{config.api.port}")

    yield  # Application runs here

    # Shutdown
    logger.info("Shutting down...")

    for gateway in gateways:
        await gateway.stop()

    if sweeper:
        await sweeper.stop()

    if authority:
        await authority.stop()

    for t in transports:
        await t.stop()

    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Smart Parking Lock Service",
    description="Reservation authority synchronising parking slot locks over publish/subscribe",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(router, prefix="/api/v1")


async def run_simulator(cfg: AppConfig) -> None:
    """Run only the simulated gateways against the configured broker."""
    sim_gateways = build_gateways(
        cfg,
        lambda gateway_id: create_transport(cfg, client_id=f"gateway_{gateway_id}"),
    )
    for gateway in sim_gateways:
        await gateway.transport.start()
        await gateway.start()
    logger.info(f"Simulator running {len(sim_gateways)} gateway(s)")

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    await stop.wait()

    logger.info("Shutting down simulator...")
    for gateway in sim_gateways:
        await gateway.stop()
        await gateway.transport.stop()


def simulator() -> None:
    """Run the standalone gateway simulator."""
    cfg = load_app_config()
    if cfg.mqtt.transport != "mqtt":
        logger.warning("Standalone simulator needs mqtt transport; in-memory gateways would be unreachable")
    asyncio.run(run_simulator(cfg))


def main():
    """Run the application."""
    # Load config just to get API settings
    config_path = get_config_path()
    if config_path.exists():
        cfg = load_config(config_path)
        host = cfg.api.host
        port = cfg.api.port
    else:
        host = "0.0.0.0"
        port = 3000

    uvicorn.run(
        "parking_iot.main:app",
        host=host,
        port=port,
        reload=False,
    )


if __name__ == "__main__":
    main()
