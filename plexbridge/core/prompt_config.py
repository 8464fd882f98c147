"""Persona prompt loader from YAML files.

Supports text prompts too long to keep in environment variables.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

import structlog
import yaml


logger = structlog.get_logger(__name__)


@dataclass
class PromptConfig:
    """Engine persona loaded from YAML.

    Fields:
        text_prompt: Persona/role prompt sent in the engine URL (required)
        voice_prompt: Optional voice prompt file name overriding the default
        metadata: Optional metadata for documentation purposes
    """

    text_prompt: str = "You enjoy having a good conversation."
    voice_prompt: Optional[str] = None
    metadata: Optional[Dict] = None

    @classmethod
    def from_yaml(cls, file_path: str | Path) -> "PromptConfig":
        """Load prompt configuration from a YAML file.

        Args:
            file_path: Path to YAML configuration file

        Returns:
            PromptConfig instance

        Raises:
            FileNotFoundError: If YAML file doesn't exist
            ValueError: If YAML file is invalid
        """
        file_path = Path(file_path)

        if not file_path.exists():
            raise FileNotFoundError(f"Prompt file not found: {file_path}")

        logger.info("Loading prompts from YAML", file_path=str(file_path))

        try:
            with open(file_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML file: {e}") from e

        if not isinstance(data, dict):
            raise ValueError("YAML file must contain a dictionary")

        text_prompt = data.get("text_prompt")
        voice_prompt = data.get("voice_prompt")

        if not text_prompt:
            raise ValueError("'text_prompt' field is required in YAML config")
        if not isinstance(text_prompt, str):
            raise ValueError("'text_prompt' field must be a string")
        if voice_prompt is not None and not isinstance(voice_prompt, str):
            raise ValueError("'voice_prompt' field must be a string")

        # Collapse multi-line YAML blocks into one line for the URL
        text_prompt = " ".join(text_prompt.split())
        if voice_prompt:
            voice_prompt = voice_prompt.strip()

        logger.info(
            "Prompt config loaded",
            text_prompt_length=len(text_prompt),
            voice_prompt=voice_prompt
        )

        return cls(
            text_prompt=text_prompt,
            voice_prompt=voice_prompt or None,
            metadata=data.get("metadata")
        )

    @classmethod
    def from_yaml_or_none(cls, file_path: Optional[str | Path]) -> Optional["PromptConfig"]:
        """Load from YAML if a path is given.

        A path that is given but cannot be loaded raises; there is no fallback
        to the defaults.
        """
        if not file_path:
            return None
        return cls.from_yaml(file_path)

    def to_dict(self) -> Dict:
        return {
            "text_prompt": self.text_prompt[:100] + "..." if len(self.text_prompt) > 100 else self.text_prompt,
            "voice_prompt": self.voice_prompt,
            "metadata": self.metadata,
            "text_prompt_length": len(self.text_prompt),
        }
