"""Configuration loader for agent-memlayer."""

import json
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Optional

import yaml


def _section(cls, data):
    """Build a section dataclass from a dict, ignoring unknown keys."""
    if isinstance(data, cls):
        return data
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in (data or {}).items() if k in known})


@dataclass
class BudgetConfig:
    """Context assembly budget settings."""
    chars_per_token: int = 4
    min_total_tokens: int = 48       # below this assemble() raises
    recent_reserve_tokens: int = 24  # held back from notes for recent turns
    min_note_tokens: int = 12        # per-note floor when truncating
    recent_max_turns: int = 12
    profile_ceiling: float = 0.70
    summary_ceiling: float = 0.85
    reactivation_ceiling: float = 0.95

    def __post_init__(self):
        if self.chars_per_token < 1 or self.min_note_tokens < 1:
            raise ValueError("chars_per_token and min_note_tokens must be positive")
        # the reserve must hold at least one cut-down turn
        if self.recent_reserve_tokens < self.min_note_tokens:
            raise ValueError(
                f"recent_reserve_tokens={self.recent_reserve_tokens} is below "
                f"min_note_tokens={self.min_note_tokens}"
            )
        if self.recent_reserve_tokens >= self.min_total_tokens:
            raise ValueError(
                f"recent_reserve_tokens={self.recent_reserve_tokens} leaves nothing of "
                f"min_total_tokens={self.min_total_tokens} for pinned notes"
            )
        for name in ("profile_ceiling", "summary_ceiling", "reactivation_ceiling"):
            if not 0.0 < getattr(self, name) <= 1.0:
                raise ValueError(f"{name} must be in (0, 1]")


@dataclass
class SummaryConfig:
    """Summarization trigger and job settings."""
    message_threshold: int = 10
    idle_hours: float = 24.0
    delay_seconds: float = 300.0
    window_turns: int = 50
    max_chars: int = 1200


@dataclass
class ExtractionConfig:
    """Fact extraction and consent settings."""
    min_confidence: float = 0.7
    min_new_turns: int = 4
    window_turns: int = 20
    delay_seconds: float = 60.0
    consent_ttl_days: float = 7.0
    stage_policy: str = "monotonic"  # "monotonic" or "free"
    auto_accept_confidence: Optional[float] = None


@dataclass
class ReactivationConfig:
    """Cold-return detection settings."""
    idle_days: float = 7.0
    brief_max_chars: int = 600


@dataclass
class ModelConfig:
    """HTTP model client settings (OpenAI-compatible chat completions)."""
    base_url: str = "https://api.openai.com"
    model: str = "gpt-4o-mini"
    api_key_env: str = "MEMLAYER_API_KEY"
    timeout_seconds: float = 30.0
    temperature: float = 0.3
    max_output_tokens: int = 700


@dataclass
class TaskConfig:
    """Background task queue settings."""
    workers: int = 2
    queue_size: int = 256
    task_timeout_seconds: float = 60.0


@dataclass
class EngineConfig:
    """Main configuration for agent-memlayer."""
    db_path: str = "./memlayer.db"
    log_path: Optional[str] = None
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    summary: SummaryConfig = field(default_factory=SummaryConfig)
    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)
    reactivation: ReactivationConfig = field(default_factory=ReactivationConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    tasks: TaskConfig = field(default_factory=TaskConfig)

    def __post_init__(self):
        """Convert dicts to proper config objects."""
        self.budget = _section(BudgetConfig, self.budget)
        self.summary = _section(SummaryConfig, self.summary)
        self.extraction = _section(ExtractionConfig, self.extraction)
        self.reactivation = _section(ReactivationConfig, self.reactivation)
        self.model = _section(ModelConfig, self.model)
        self.tasks = _section(TaskConfig, self.tasks)
        if self.extraction.stage_policy not in ("monotonic", "free"):
            raise ValueError(f"Unknown stage_policy: {self.extraction.stage_policy}")

    @classmethod
    def load(cls, path: str) -> "EngineConfig":
        """Load configuration from YAML or JSON file."""
        path = Path(path)

        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        content = path.read_text()

        if path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(content) or {}
        else:
            data = json.loads(content)

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict) -> "EngineConfig":
        """Create config from dictionary."""
        return cls(
            db_path=data.get("db_path", "./memlayer.db"),
            log_path=data.get("log_path"),
            budget=_section(BudgetConfig, data.get("budget")),
            summary=_section(SummaryConfig, data.get("summary")),
            extraction=_section(ExtractionConfig, data.get("extraction")),
            reactivation=_section(ReactivationConfig, data.get("reactivation")),
            model=_section(ModelConfig, data.get("model")),
            tasks=_section(TaskConfig, data.get("tasks")),
        )

    @classmethod
    def default(cls, base_dir: str = ".") -> "EngineConfig":
        """Create default configuration for a directory."""
        base = Path(base_dir)
        return cls(db_path=str(base / "memlayer.db"))

    def to_dict(self) -> dict:
        """Convert config to dictionary."""
        return asdict(self)

    def save(self, path: str):
        """Save configuration to file."""
        path = Path(path)
        data = self.to_dict()

        if path.suffix in (".yaml", ".yml"):
            content = yaml.dump(data, default_flow_style=False, sort_keys=False)
        else:
            content = json.dumps(data, indent=2)

        path.write_text(content)
