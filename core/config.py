"""
Configuration management for agent workflows.

Provides centralized loading and validation of configuration from
environment variables and .env files.
"""

import os
import logging
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv

from .approval import ToolApprovalPolicy, ToolRiskLevel
from .context_compactor import DEFAULT_HISTORY_PATH_PREFIX, CompactionPolicy, SummarizationPolicy
from .state import AgentConfig, Capability, DEFAULT_CAPABILITIES

logger = logging.getLogger(__name__)


def _split_list(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


def _optional_int(name: str) -> Optional[int]:
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else None


def _optional_float(name: str) -> Optional[float]:
    raw = os.getenv(name, "").strip()
    return float(raw) if raw else None


def parse_approval_policy(raw: str) -> ToolApprovalPolicy:
    """
    Parse ``never``, ``always`` or ``allow_list:a,b``.

    Raises:
        ValueError: For any other value
    """
    value = raw.strip()
    if value == "never":
        return ToolApprovalPolicy.never()
    if value == "always":
        return ToolApprovalPolicy.always()
    if value.startswith("allow_list"):
        _, _, names = value.partition(":")
        return ToolApprovalPolicy.allow_list(_split_list(names))
    raise ValueError(f"Invalid tool approval policy: {raw!r}")


def parse_risk_levels(raw: str) -> dict[str, ToolRiskLevel]:
    """
    Parse ``tool=level`` pairs, e.g. ``fetch=network, deploy=execution``.

    Raises:
        ValueError: For a malformed pair or an unknown level
    """
    levels = {}
    for item in _split_list(raw):
        name, sep, level = item.partition("=")
        if not sep or not name.strip():
            raise ValueError(f"Invalid tool risk level: {item!r}")
        levels[name.strip()] = ToolRiskLevel(level.strip())
    return levels


def parse_compaction_policy(raw: str) -> CompactionPolicy:
    """
    Parse ``disabled``, ``max_messages:N`` or ``max_tokens:N``.

    Raises:
        ValueError: For any other value
    """
    value = raw.strip()
    if value == "disabled":
        return CompactionPolicy.disabled()
    mode, _, limit = value.partition(":")
    if mode == "max_messages" and limit:
        return CompactionPolicy.max_messages(int(limit))
    if mode == "max_tokens" and limit:
        return CompactionPolicy.max_tokens(int(limit))
    raise ValueError(f"Invalid compaction policy: {raw!r}")


class ConfigLoader:
    """
    Load and validate agent configuration from multiple sources.

    Priority (highest to lowest):
    1. Environment variables
    2. .env file
    3. Default values

    Example:
        >>> loader = ConfigLoader()
        >>> agent_config = loader.load_agent_config()
        >>> router_policy = loader.load_router_policy()
    """

    def __init__(self, env_file: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            env_file: Path to .env file (default: .env in working directory)
        """
        env_path = Path(env_file) if env_file else Path.cwd() / ".env"
        if env_path.exists():
            load_dotenv(env_path)
            logger.info(f"Loaded configuration from {env_path}")

        self._loaded_from_env = env_path.exists()

    def load_agent_config(self) -> AgentConfig:
        """
        Load agent configuration from environment.

        Environment variables:
        - AGENT_MODEL_NAME: Model identifier (default: "default")
        - AGENT_CAPABILITIES: Comma list of planning, filesystem, shell, subagents
        - AGENT_TOOL_APPROVAL: never | always | allow_list:a,b
        - AGENT_TOOL_RISK_LEVELS: Comma list of tool=level overrides
        - AGENT_MANDATORY_APPROVAL_RISK_LEVELS: Comma list of levels that always need approval
        - AGENT_DEFAULT_TOOL_RISK_LEVEL: Level of unknown tools (default: read_only)
        - AGENT_COMPACTION: disabled | max_messages:N | max_tokens:N
        - AGENT_SUMMARIZE_TRIGGER_TOKENS: Enables summarization when set
        - AGENT_SUMMARIZE_KEEP_LAST: Messages kept verbatim (default: 6)
        - AGENT_HISTORY_PATH_PREFIX: Offload directory (default: /conversation_history)
        - AGENT_REQUEST_HARD_TOKEN_LIMIT: Hard request ceiling
        - AGENT_TOOL_RESULT_EVICTION_TOKEN_LIMIT: Eviction threshold (default: 20000)
        - AGENT_SYSTEM_PROMPT: Additional system prompt
        - AGENT_MEMORY_SOURCES: Comma list of memory file paths
        - AGENT_INCLUDE_TOOL_LIST: Render the Tools section (default: true)
        - AGENT_MAX_STEPS: Graph recursion limit (default: 50)

        Returns:
            AgentConfig: Validated configuration instance
        """
        defaults = AgentConfig()

        capabilities_raw = os.getenv("AGENT_CAPABILITIES")
        capabilities = (
            frozenset(Capability(name) for name in _split_list(capabilities_raw))
            if capabilities_raw is not None
            else DEFAULT_CAPABILITIES
        )

        approval_raw = os.getenv("AGENT_TOOL_APPROVAL")
        approval = parse_approval_policy(approval_raw) if approval_raw else defaults.tool_approval_policy

        mandatory_levels = frozenset(
            ToolRiskLevel(level) for level in _split_list(os.getenv("AGENT_MANDATORY_APPROVAL_RISK_LEVELS", ""))
        )

        compaction_raw = os.getenv("AGENT_COMPACTION")
        compaction = parse_compaction_policy(compaction_raw) if compaction_raw else defaults.compaction_policy

        summarization = None
        trigger = _optional_int("AGENT_SUMMARIZE_TRIGGER_TOKENS")
        if trigger is not None:
            summarization = SummarizationPolicy(
                trigger_tokens=trigger,
                keep_last_messages=int(os.getenv("AGENT_SUMMARIZE_KEEP_LAST", "6")),
                history_path_prefix=os.getenv("AGENT_HISTORY_PATH_PREFIX", DEFAULT_HISTORY_PATH_PREFIX),
            )

        config = AgentConfig(
            model_name=os.getenv("AGENT_MODEL_NAME", defaults.model_name),
            capabilities=capabilities,
            tool_approval_policy=approval,
            tool_risk_level_overrides=parse_risk_levels(os.getenv("AGENT_TOOL_RISK_LEVELS", "")),
            mandatory_approval_risk_levels=mandatory_levels,
            default_tool_risk_level=ToolRiskLevel(
                os.getenv("AGENT_DEFAULT_TOOL_RISK_LEVEL", defaults.default_tool_risk_level.value)
            ),
            compaction_policy=compaction,
            summarization_policy=summarization,
            request_hard_token_limit=_optional_int("AGENT_REQUEST_HARD_TOKEN_LIMIT"),
            tool_result_eviction_token_limit=int(
                os.getenv("AGENT_TOOL_RESULT_EVICTION_TOKEN_LIMIT", str(defaults.tool_result_eviction_token_limit))
            ),
            additional_system_prompt=os.getenv("AGENT_SYSTEM_PROMPT") or None,
            memory_sources=tuple(_split_list(os.getenv("AGENT_MEMORY_SOURCES", ""))),
            include_tool_list_in_system_prompt=os.getenv("AGENT_INCLUDE_TOOL_LIST", "true").lower() == "true",
            max_steps=int(os.getenv("AGENT_MAX_STEPS", str(defaults.max_steps))),
        )

        logger.info(
            f"Loaded AgentConfig: model={config.model_name}, "
            f"capabilities={sorted(c.value for c in config.capabilities)}, "
            f"approval={config.tool_approval_policy.mode}, max_steps={config.max_steps}"
        )

        return config

    def load_router_policy(self):
        """
        Load provider router policy from environment.

        Environment variables:
        - ROUTER_MAX_ATTEMPTS: Attempts per provider (default: 2)
        - ROUTER_INITIAL_BACKOFF_MS: First retry delay (default: 100)
        - ROUTER_MAX_BACKOFF_MS: Backoff cap (default: 1000)
        - ROUTER_GLOBAL_RPM: Requests per minute across providers
        - ROUTER_COST_CEILING_USD: Cumulative spend ceiling
        - ROUTER_OUTPUT_INPUT_RATIO: Estimated output/input tokens (default: 0.5)
        - ROUTER_DEGRADED_RESPONSE: Reply returned when every provider fails

        Returns:
            RouterPolicy: Clamped policy instance
        """
        from orchestrator.provider_router import RouterPolicy

        policy = RouterPolicy(
            max_attempts_per_provider=int(os.getenv("ROUTER_MAX_ATTEMPTS", "2")),
            initial_backoff_seconds=float(os.getenv("ROUTER_INITIAL_BACKOFF_MS", "100")) / 1000,
            max_backoff_seconds=float(os.getenv("ROUTER_MAX_BACKOFF_MS", "1000")) / 1000,
            global_max_requests_per_minute=_optional_int("ROUTER_GLOBAL_RPM"),
            cost_ceiling_usd=_optional_float("ROUTER_COST_CEILING_USD"),
            estimated_output_to_input_ratio=float(os.getenv("ROUTER_OUTPUT_INPUT_RATIO", "0.5")),
            degraded_response=os.getenv("ROUTER_DEGRADED_RESPONSE") or None,
        )

        logger.info(
            f"Loaded RouterPolicy: attempts={policy.max_attempts_per_provider}, "
            f"global_rpm={policy.global_max_requests_per_minute}, ceiling={policy.cost_ceiling_usd}"
        )

        return policy

    def get_storage_paths(self) -> dict[str, str]:
        """
        Extract database paths from environment.

        Returns:
            dict: ``checkpoint_db``, ``run_state_db``, ``approval_rules_db`` and
            ``tool_audit_db`` paths
        """
        return {
            "checkpoint_db": os.getenv("AGENT_CHECKPOINT_DB", "data/agent_memory.sqlite"),
            "run_state_db": os.getenv("AGENT_RUN_STATE_DB", "data/run_state.sqlite"),
            "approval_rules_db": os.getenv("AGENT_APPROVAL_RULES_DB", "data/approval_rules.sqlite"),
            "tool_audit_db": os.getenv("AGENT_TOOL_AUDIT_DB", "data/tool_audit.sqlite"),
        }

    def get_audit_signing_key(self) -> bytes:
        """HMAC key for the tool audit log from TOOL_AUDIT_SIGNING_KEY (empty when unset)."""
        key = os.getenv("TOOL_AUDIT_SIGNING_KEY", "")
        if not key:
            logger.warning("TOOL_AUDIT_SIGNING_KEY not set")
        return key.encode("utf-8")


def load_config(env_file: Optional[str] = None) -> tuple:
    """
    Convenience function to load all configuration.

    Args:
        env_file: Optional path to .env file

    Returns:
        tuple: (AgentConfig, RouterPolicy)

    Example:
        >>> agent_config, router_policy = load_config(".env.production")
        >>> workflow = AgentWorkflow(agent_config, router=ProviderRouter(providers, router_policy))
    """
    loader = ConfigLoader(env_file)
    agent_config = loader.load_agent_config()
    router_policy = loader.load_router_policy()

    return agent_config, router_policy
