"""Runtime: builds and owns every optiloop subsystem for one process."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine

from optiloop.autonomy.loop import ControlLoop, MetricsSource
from optiloop.autonomy.priority import PriorityEngine
from optiloop.autonomy.recovery import RecoveryAgent
from optiloop.autonomy.scaler import ScalingState, clamp_interval
from optiloop.autonomy.trust import TrustScorer
from optiloop.config import OptiloopSettings, settings
from optiloop.events.stream import StreamBackend, create_stream_backend
from optiloop.federation.agent import FederationAgent
from optiloop.federation.bus import FederationBus
from optiloop.federation.insight import InsightRecorder
from optiloop.kernel.orchestrator import Orchestrator
from optiloop.persistence.database import Database
from optiloop.policy.gate import PolicyGate, PolicyOracle, StaticPolicyOracle
from optiloop.types import AGENT_NAMES, AgentRole

_logger = logging.getLogger(__name__)

CORE_AGENTS: list[dict[str, Any]] = [
    {
        "agentId": AgentRole.GOVERNANCE.value,
        "name": AGENT_NAMES[AgentRole.GOVERNANCE],
        "description": "Keeps every change inside policy and compliance bounds.",
        "capabilities": ["policy-gate", "conflict-resolution"],
    },
    {
        "agentId": AgentRole.OPTIMIZER.value,
        "name": AGENT_NAMES[AgentRole.OPTIMIZER],
        "description": "Proposes performance recommendations per route.",
        "capabilities": ["recommendation", "auto-apply"],
    },
    {
        "agentId": AgentRole.LEARNING.value,
        "name": AGENT_NAMES[AgentRole.LEARNING],
        "description": "Evaluates applied recommendations and learns from outcomes.",
        "capabilities": ["evaluation", "rollback-detection"],
    },
    {
        "agentId": AgentRole.INSIGHT.value,
        "name": AGENT_NAMES[AgentRole.INSIGHT],
        "description": "Correlates outcomes and reports on loop health.",
        "capabilities": ["insight-report", "correlation"],
    },
]


class Runtime:
    """Every long-lived component, wired once at startup."""

    def __init__(
        self,
        database: Database,
        stream: StreamBackend,
        config: OptiloopSettings = settings,
        oracle: PolicyOracle | None = None,
        metrics_source: MetricsSource | None = None,
        federation_bus: FederationBus | None = None,
    ) -> None:
        self.config = config
        self.database = database
        self.stream = stream

        self.orchestrator = Orchestrator(
            stream,
            database=database,
            enabled=config.orchestration_enabled,
            stream_key=config.stream_key,
            max_length=config.stream_max_length,
        )
        if self.orchestrator.enabled:
            for agent in CORE_AGENTS:
                self.orchestrator.register_agent(agent)

        self.trust_scorer = TrustScorer(database)
        self.priority_engine = PriorityEngine(database)
        self.recovery_agent = RecoveryAgent(self.trust_scorer, database)
        self.policy_gate = PolicyGate(
            oracle or StaticPolicyOracle(),
            database,
            trust_scorer=self.trust_scorer,
            orchestrator=self.orchestrator,
        )

        self.control_loop = ControlLoop(
            self.orchestrator,
            self.priority_engine,
            self.trust_scorer,
            self.recovery_agent,
            enabled=config.autonomy_enabled,
            initial_state=ScalingState(
                interval_ms=clamp_interval(config.loop_default_interval_ms),
            ),
            history_limit=config.loop_history_limit,
            adaptive=config.loop_adaptive_interval,
            metrics_source=metrics_source,
        )

        self.federation_bus = federation_bus or FederationBus(
            tenant_id=config.federation_tenant_id,
            secret=config.federation_secret,
            endpoints=config.endpoint_list,
            enabled=config.federation_enabled,
            recent_limit=config.federation_recent_limit,
            timeout=config.federation_timeout_seconds,
        )
        self.insight_recorder = InsightRecorder(database)
        self.federation_agent = FederationAgent(
            self.federation_bus,
            trust_source=self.trust_scorer.compute,
            priority_source=self.priority_engine.stored,
            orchestrator=self.orchestrator,
            insight_recorder=self.insight_recorder,
        )

    @classmethod
    async def create(cls, config: OptiloopSettings = settings, **kwargs: Any) -> Runtime:
        """Open the store and the stream backend, then wire everything."""
        config.workspace_dir.mkdir(parents=True, exist_ok=True)
        config.db_path.parent.mkdir(parents=True, exist_ok=True)

        database = Database(str(config.db_path))
        await database.initialize()
        stream = create_stream_backend(
            config.stream_backend,
            redis_url=config.redis_url,
            max_length=config.stream_max_length,
        )
        return cls(database, stream, config=config, **kwargs)

    async def start_background(self) -> None:
        """Start the control loop and periodic federation broadcast."""
        if self.config.autonomy_enabled:
            started = await self.control_loop.start()
            _logger.info("Autonomy loop started=%s %s", started.started, started.reason)
        if self.config.federation_broadcast_interval_s > 0:
            self.federation_agent.start_periodic(self.config.federation_broadcast_interval_s)

    async def close(self) -> None:
        await self.control_loop.stop()
        self.federation_agent.dispose()
        await self.federation_bus.drain()
        await self.stream.close()
        await self.database.close()


def run_async(coro: Coroutine) -> Any:
    """Run an async coroutine from sync CLI code."""
    return asyncio.run(coro)
