import logging

from pydantic import BaseModel, Field, ValidationError
from pyaml_env import parse_config as parse_config_with_env
from typing_extensions import Annotated

from csvagent.config.llm import ChatConfig
from csvagent.config.orchestrator import OrchestratorConfig
from csvagent.exceptions import ConfigError

logger = logging.getLogger(__name__)


class CsvAgentConfig(BaseModel):
    chat_llm: Annotated[ChatConfig | None, Field(default=None)]
    orchestrator: Annotated[OrchestratorConfig, Field(default_factory=OrchestratorConfig)]
    template_lang: Annotated[str | None, Field(
        description="Language of the prompt templates, 'en' or 'zh'",
        default=None,
    )]
    trace_dir: Annotated[str | None, Field(
        description="Directory for YAML trace exports, None disables tracing",
        default=None,
    )]


def load_config(path: str) -> CsvAgentConfig:
    """Load a YAML config file, expanding ``${ENV}`` references."""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = parse_config_with_env(data=f, tag=None)
    except OSError as e:
        raise ConfigError(f"Cannot read config file '{path}': {e}") from e
    try:
        config = CsvAgentConfig.model_validate(data or {})
    except ValidationError as e:
        raise ConfigError(f"Invalid config file '{path}':\n{e}") from e
    logger.debug(f"Loaded config: {config}")
    return config
