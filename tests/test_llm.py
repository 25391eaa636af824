"""Unit tests for LLM utilities."""

import pytest
from pydantic_ai.messages import ModelMessage, ModelResponse, TextPart
from pydantic_ai.models.function import AgentInfo, FunctionModel

from imspilot.exceptions import AIInferenceError, ConfigError
from imspilot.libs.llm import AIClient, create_agent, create_model


@pytest.fixture
def test_configs():
    return {
        "openai": {
            "api_key": "test-key",
            "base_url": "https://llm.example.org/v1",
            "model": "gpt-4o-mini",
            "timeout_seconds": 30,
            "pydantic_ai_settings": {}
        }
    }


def reply_with(text):
    """FunctionModel that always answers ``text`` and records the prompts it saw."""
    seen = []

    def respond(messages: list[ModelMessage], info: AgentInfo) -> ModelResponse:
        seen.append(messages)
        return ModelResponse(parts=[TextPart(text)])

    return FunctionModel(respond), seen


class TestCreateAgent:
    """Test the create_agent function."""

    def test_create_agent_with_defaults(self, test_configs):
        """Test creating agent with default configuration."""
        agent = create_agent(test_configs)
        assert agent is not None

    def test_create_agent_with_model_override(self, test_configs):
        """Test creating agent with a model name that overrides the config."""
        model = create_model(test_configs, model="deepseek-chat")
        assert model.model_name == "deepseek-chat"

        agent = create_agent(configs=test_configs, model="deepseek-chat")
        assert agent is not None

    def test_create_agent_with_system_prompt(self, test_configs):
        """Test creating agent with custom system prompt."""
        agent = create_agent(
            configs=test_configs,
            system_prompt="You answer exam questions."
        )
        assert agent is not None

    def test_create_agent_with_settings_dict(self, test_configs):
        """Test creating agent with custom settings dictionary."""
        agent = create_agent(
            configs=test_configs,
            settings_dict={"temperature": 0.2, "max_tokens": 200}
        )
        assert agent is not None

    def test_create_agent_missing_api_key(self):
        """Missing credentials are a configuration error."""
        with pytest.raises(ConfigError, match="api_key"):
            create_agent({"openai": {"model": "gpt-4o-mini"}})

    def test_create_agent_missing_model(self):
        with pytest.raises(ConfigError, match="model"):
            create_agent({"openai": {"api_key": "test-key"}})

    def test_prebuilt_model_skips_credentials(self):
        """A prebuilt pydantic-ai model needs no openai section at all."""
        llm, _ = reply_with("A")
        agent = create_agent({}, llm=llm)
        assert agent is not None


class TestAIClient:
    """Test the single-shot AIClient."""

    @pytest.mark.asyncio
    async def test_complete_returns_stripped_text(self):
        """The reply text is returned without surrounding whitespace."""
        llm, seen = reply_with("  B  \n")
        client = AIClient({}, llm=llm)

        answer = await client.complete("system", "Question?", "Reply with a letter.")

        assert answer == "B"
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_agent_is_reused_per_system_prompt(self):
        """One agent is built per distinct system instruction."""
        llm, _ = reply_with("A")
        client = AIClient({}, llm=llm)

        await client.complete("single", "Q1")
        await client.complete("single", "Q2")
        await client.complete("multi", "Q3")

        assert len(client._agents) == 2

    @pytest.mark.asyncio
    async def test_empty_reply_raises(self):
        """An empty reply is an inference error."""
        llm, _ = reply_with("   ")
        client = AIClient({}, llm=llm)

        with pytest.raises(AIInferenceError):
            await client.complete("system", "Question?")

    @pytest.mark.asyncio
    async def test_model_failure_is_wrapped(self):
        """Exceptions from the model surface as AIInferenceError."""
        def boom(messages, info):
            raise RuntimeError("connection reset")

        client = AIClient({}, llm=FunctionModel(boom))

        with pytest.raises(AIInferenceError, match="connection reset"):
            await client.complete("system", "Question?")
