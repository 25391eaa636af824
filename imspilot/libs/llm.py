"""LLM utilities for creating and configuring AI agents."""


import logging
from typing import Optional, Dict, Any

from pydantic_ai import Agent
from pydantic_ai.models import Model
from pydantic_ai.models.openai import OpenAIChatModel
from pydantic_ai.providers.openai import OpenAIProvider
from pydantic_ai.settings import ModelSettings

from imspilot.exceptions import AIInferenceError, ConfigError
from imspilot.libs.config_loader import ConfigType, get_config


# Fix up logging level for httpx to WARNING to reduce noise
logging.getLogger("httpx").setLevel(logging.WARNING)

LOG = logging.getLogger(__name__)


def create_model(configs: ConfigType, model: Optional[str] = None) -> OpenAIChatModel:
    """
    Create an OpenAI-compatible chat model from the ``openai`` config section.

    Args:
        configs: Configuration dictionary (required)
        model: Model name (overrides config value)

    Raises:
        ConfigError: If the API key or model name is missing
    """
    api_key = get_config("openai.api_key", configs, default=None)
    base_url = get_config("openai.base_url", configs, default=None)
    model = model or get_config("openai.model", configs, default=None)

    if not api_key:
        raise ConfigError("openai.api_key is not configured")
    if not model:
        raise ConfigError("openai.model is not configured")

    provider = OpenAIProvider(base_url=base_url, api_key=api_key)
    return OpenAIChatModel(model, provider=provider)


def create_agent(configs: ConfigType,
                 model: Optional[str] = None,
                 settings_dict: Optional[Dict[str, Any]] = None,
                 system_prompt: Optional[str] = None,
                 llm: Optional[Model] = None) -> Agent:
    """
    Create a pydantic-ai Agent configured with an OpenAI-compatible model.

    Args:
        configs: Configuration dictionary (required)
        model: Model to use (overrides config value)
        settings_dict: Pydantic AI settings dict (overrides config values)
        system_prompt: System prompt for the agent (optional)
        llm: Prebuilt pydantic-ai model; skips reading credentials

    Returns:
        Configured Agent
    """
    base_settings = get_config("openai.pydantic_ai_settings", configs, default={}) or {}
    timeout = get_config("openai.timeout_seconds", configs, default=None)
    if timeout:
        base_settings = {"timeout": float(timeout)} | base_settings

    settings_dict = base_settings | (settings_dict or {})
    model_settings = ModelSettings(**settings_dict) if settings_dict else None
    chat_model = llm or create_model(configs, model)
    if system_prompt:
        agent = Agent(
            model=chat_model,
            model_settings=model_settings,
            system_prompt=system_prompt,
            retries=0,
        )
    else:
        agent = Agent(
            model=chat_model,
            model_settings=model_settings,
            retries=0,
        )
    return agent


class AIClient:
    """Single-shot question answering over a pydantic-ai agent.

    One agent is kept per distinct system instruction, so the prompt
    templates of each question type are built once.
    """

    def __init__(self, configs: ConfigType, model: Optional[str] = None, llm: Optional[Model] = None):
        self.configs = configs
        self.model_name = model
        self._llm = llm or create_model(configs, model)
        self._agents: Dict[str, Agent] = {}

    def _agent_for(self, system: str) -> Agent:
        agent = self._agents.get(system)
        if agent is None:
            agent = create_agent(self.configs, system_prompt=system, llm=self._llm)
            self._agents[system] = agent
        return agent

    async def complete(self, system: str, prompt: str, directive: Optional[str] = None) -> str:
        """
        Ask the model one question.

        Args:
            system: System instruction describing the question type
            prompt: Rendered question with its options
            directive: Expected answer format, sent as a trailing user part

        Returns:
            The raw text of the model's reply

        Raises:
            AIInferenceError: On transport failure or an empty reply
        """
        user_prompt = [prompt, directive] if directive else prompt
        try:
            result = await self._agent_for(system).run(user_prompt)
        except Exception as e:
            raise AIInferenceError(f"model call failed: {e}") from e

        text = str(result.output or "").strip()
        if not text:
            raise AIInferenceError("model returned an empty answer")
        return text
