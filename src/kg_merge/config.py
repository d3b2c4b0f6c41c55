"""Configuration management for kg-merge using pydantic-settings.

Settings priority (highest to lowest):
1. CLI flags (applied after KgMergeConfig creation)
2. Environment variables (KGM_* prefix)
3. .env file
4. kgm.yaml project config
5. Default values
"""

import logging
from pathlib import Path

import yaml
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from kg_merge.merge.models import MergeSettings
from kg_merge.quality.models import QualityConfig

logger = logging.getLogger(__name__)

# Map kgm.yaml keys to KgMergeConfig field names
_YAML_TO_FIELD = {
    "ontology": "ontology_path",
    "database": "database_path",
    "output": "output_dir",
    "concurrency": "concurrency",
}

# Nested kgm.yaml blocks: quality: {...}, merge: {...}
_YAML_BLOCKS = {
    "quality": {
        "error_penalty": "error_penalty",
        "warning_penalty": "warning_penalty",
        "info_penalty": "info_penalty",
        "manual_review_threshold": "manual_review_threshold",
        "auto_approve": "auto_approve",
        "auto_approve_threshold": "auto_approve_threshold",
    },
    "merge": {
        "auto_resolve_threshold": "auto_resolve_threshold",
        "max_commit_retries": "max_commit_retries",
        "commit_timeout": "commit_timeout",
    },
}


class _ProjectYamlSource(PydanticBaseSettingsSource):
    """Read project config from kgm.yaml (lower priority than env vars)."""

    def get_field_value(self, field, field_name):  # type: ignore[override]
        return None, field_name, False

    def __call__(self) -> dict:
        project_file = Path("kgm.yaml")
        if not project_file.exists():
            return {}

        raw = yaml.safe_load(project_file.read_text()) or {}

        result: dict = {}
        for yaml_key, field_name in _YAML_TO_FIELD.items():
            if yaml_key in raw:
                result[field_name] = raw[yaml_key]
        for block, mapping in _YAML_BLOCKS.items():
            section = raw.get(block) or {}
            for yaml_key, field_name in mapping.items():
                if yaml_key in section:
                    result[field_name] = section[yaml_key]
        return result


class KgMergeConfig(BaseSettings):
    """Configuration settings for kg-merge.

    All environment variables are prefixed with KGM_ (e.g. KGM_AUTO_RESOLVE_THRESHOLD).
    Empty string values in environment variables are treated as unset.

    Example:
        >>> config = KgMergeConfig()
        >>> engine_config = config.to_quality_config()
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="KGM_",
        extra="ignore",
        env_ignore_empty=True,
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            _ProjectYamlSource(settings_cls),
            file_secret_settings,
        )

    # --- quality scoring ---
    error_penalty: float = Field(default=20.0, ge=0.0, description="Score penalty per error violation")
    warning_penalty: float = Field(default=10.0, ge=0.0, description="Score penalty per warning violation")
    info_penalty: float = Field(default=2.0, ge=0.0, description="Score penalty per info violation")
    manual_review_threshold: float = Field(
        default=70.0, ge=0.0, le=100.0,
        description="Quality scores below this require manual review",
    )
    auto_approve: bool = Field(default=True, description="Approve clean quality results automatically")
    auto_approve_threshold: float = Field(
        default=90.0, ge=0.0, le=100.0,
        description="Minimum score for automatic quality gate approval",
    )

    # --- merge runs ---
    auto_resolve_threshold: float = Field(
        default=0.9, ge=0.0, le=1.0,
        description="Conflicts with a suggestion at or above this confidence resolve automatically",
    )
    concurrency: int = Field(default=8, ge=1, description="Parallel matching/diffing workers")
    max_commit_retries: int = Field(default=3, ge=1, description="Bounded retries for retriable commit errors")
    commit_timeout: float = Field(default=30.0, gt=0.0, description="Seconds before a store commit times out")

    # --- paths ---
    ontology_path: Path | None = Field(
        default=None,
        description="Path to ontology YAML (uses the bundled ontology if not set)",
    )
    database_path: Path | None = Field(
        default=None,
        description="SQLite graph database (defaults to <output_dir>/graph.db)",
    )
    output_dir: Path = Field(
        default=Path("output"),
        description="Directory for quality results, conflict files and exports",
    )

    @field_validator("output_dir", mode="before")
    @classmethod
    def resolve_output_dir(cls, v: Path | str) -> Path:
        """Convert output_dir to an absolute path and create it if missing."""
        path = Path(v) if isinstance(v, str) else v
        path = path.resolve()
        path.mkdir(parents=True, exist_ok=True)
        return path

    @model_validator(mode="after")
    def _check_penalty_order(self) -> "KgMergeConfig":
        if not (self.error_penalty >= self.warning_penalty >= self.info_penalty):
            logger.warning(
                "Severity penalties are not ordered error >= warning >= info "
                f"({self.error_penalty}/{self.warning_penalty}/{self.info_penalty})"
            )
        return self

    @property
    def graph_database(self) -> Path:
        return self.database_path or (self.output_dir / "graph.db")

    def to_quality_config(self) -> QualityConfig:
        """Quality engine settings derived from this config."""
        return QualityConfig(
            error_penalty=self.error_penalty,
            warning_penalty=self.warning_penalty,
            info_penalty=self.info_penalty,
            manual_review_threshold=self.manual_review_threshold,
            auto_approve=self.auto_approve,
            auto_approve_threshold=self.auto_approve_threshold,
        )

    def to_merge_settings(self) -> MergeSettings:
        """Merge orchestrator settings derived from this config."""
        return MergeSettings(
            auto_resolve_threshold=self.auto_resolve_threshold,
            concurrency=self.concurrency,
            max_commit_retries=self.max_commit_retries,
            commit_timeout=self.commit_timeout,
        )
