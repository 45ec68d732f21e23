"""optiloop live server: HTTP surface plus the autonomy loop and federation."""

from __future__ import annotations

import asyncio
import logging

import uvicorn

from optiloop.api.app import api_app, configure
from optiloop.config import OptiloopSettings, settings
from optiloop.runtime import Runtime

_logger = logging.getLogger(__name__)


async def main(config: OptiloopSettings = settings) -> None:
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # The one hard startup failure: federation on without a shared secret
    config.require_federation_secret()

    runtime = await Runtime.create(config)

    configure(
        orchestrator=runtime.orchestrator,
        control_loop=runtime.control_loop,
        federation_bus=runtime.federation_bus,
        federation_agent=runtime.federation_agent,
    )

    _logger.info(
        "optiloop starting: tenant=%s stream=%s orchestration=%s autonomy=%s federation=%s",
        config.federation_tenant_id,
        config.stream_backend,
        config.orchestration_enabled,
        config.autonomy_enabled,
        runtime.federation_bus.is_enabled,
    )

    background = asyncio.create_task(runtime.start_background())

    # Run uvicorn in the same event loop
    server = uvicorn.Server(uvicorn.Config(
        api_app,
        host=config.api_host,
        port=config.api_port,
        log_level="warning",
    ))
    try:
        await server.serve()
    finally:
        background.cancel()
        await runtime.close()


if __name__ == "__main__":
    asyncio.run(main())
