"""Application configuration loaded from environment variables and ``.env``."""

from pathlib import Path
from typing import Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from plexbridge.ai.duplex_base import EngineSettings, ReconnectPolicy

EnvFile = Union[str, Path, None]


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    if value is None or value.strip() == "":
        return None
    return value


class EngineConfig(BaseSettings):
    """Speech engine connection settings (``ENGINE_*``)."""

    model_config = SettingsConfigDict(
        env_prefix="ENGINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    url: str = Field(default="wss://localhost:8998/api/chat")
    voice_prompt: str = Field(default="NATF2.pt")
    text_prompt: str = Field(default="You enjoy having a good conversation.")
    verify_ssl: bool = Field(default=False)
    max_reconnect_attempts: int = Field(default=30, ge=0)
    reconnect_delay: float = Field(default=2.0, gt=0)
    handshake_timeout: Optional[float] = Field(
        default=60.0,
        gt=0,
        description="Seconds from socket open to engine handshake before the attempt is dropped.",
    )
    prompt_file: Optional[str] = Field(default=None, validation_alias="PROMPT_FILE")

    @field_validator("prompt_file", mode="before")
    @classmethod
    def _empty_prompt_file(cls, value: Optional[str]) -> Optional[str]:
        return _blank_to_none(value)

    def settings(self, text_prompt: Optional[str] = None) -> EngineSettings:
        return EngineSettings(
            url=self.url,
            voice_prompt=self.voice_prompt,
            text_prompt=text_prompt or self.text_prompt,
            verify_ssl=self.verify_ssl,
            handshake_timeout=self.handshake_timeout
        )

    def reconnect_policy(self) -> ReconnectPolicy:
        return ReconnectPolicy(
            enabled=True,
            max_attempts=self.max_reconnect_attempts,
            base_delay=self.reconnect_delay
        )


class AudioConfig(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # "linear" or a soxr quality recipe ("LQ", "MQ", "HQ", "VHQ")
    resampler_quality: str = Field(default="linear")


class ServerConfig(BaseSettings):
    """Webhook and media stream listener (``SERVER_*``)."""

    model_config = SettingsConfigDict(
        env_prefix="SERVER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000, ge=0, le=65535)
    # Empty string disables the greeting
    welcome_message: Optional[str] = Field(
        default="Connected to voice assistant. You can start speaking.",
        validation_alias="WELCOME_MESSAGE",
    )

    @field_validator("welcome_message", mode="before")
    @classmethod
    def _empty_welcome(cls, value: Optional[str]) -> Optional[str]:
        return _blank_to_none(value)


class SystemConfig(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    log_level: str = Field(default="INFO")
    log_format: Literal["console", "json"] = Field(default="console")
    log_dir: str = Field(default="logs")


class AppConfig(BaseModel):
    engine: EngineConfig = Field(default_factory=EngineConfig)
    audio: AudioConfig = Field(default_factory=AudioConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    system: SystemConfig = Field(default_factory=SystemConfig)


def load_config(env_file: EnvFile = ".env") -> AppConfig:
    """Build configuration from the process environment and an optional dotenv file.

    Process environment variables take precedence over the file.

    Raises:
        pydantic.ValidationError: If a variable fails validation
    """
    return AppConfig(
        engine=EngineConfig(_env_file=env_file),
        audio=AudioConfig(_env_file=env_file),
        server=ServerConfig(_env_file=env_file),
        system=SystemConfig(_env_file=env_file),
    )


config = load_config()
