from __future__ import annotations

from configparser import ConfigParser
from pathlib import Path

import yaml

DEFAULT_SYSTEM_PROMPT = "You are an agent executing one step of an automated workflow."


class AppConfig:
    def __init__(self, path: str | Path | None = None) -> None:
        parser = ConfigParser()
        package_root = Path(__file__).resolve().parent.parent
        if path is not None:
            config_path = Path(path)
            parser.read(config_path)
        else:
            config_path = package_root / "config.ini"
            parser.read(config_path)
            if not parser.sections():
                config_path = Path("config.ini")
                parser.read(config_path)
        self._parser = parser
        prompts_path = config_path.parent / "prompts.yaml"
        self._prompts = self._load_prompts(prompts_path)

    def store_settings(self) -> dict[str, object]:
        return {"db_path": self._get_str("store", "db_path", "data/workflows.db")}

    def engine_settings(self) -> dict[str, object]:
        scope = self._get_str("engine", "concurrency_scope", "run").strip().lower()
        if scope not in ("run", "workflow"):
            raise ValueError(f"engine.concurrency_scope must be 'run' or 'workflow', got {scope!r}")
        workers = self._get_int("engine", "workers", 2)
        if workers < 0:
            raise ValueError("engine.workers must not be negative")
        default_max = self._get_int("engine", "default_max_concurrency", 2)
        if default_max < 1:
            raise ValueError("engine.default_max_concurrency must be at least 1")
        return {
            "workers": workers,
            "tick_seconds": self._get_float("engine", "tick_seconds", 1.0),
            "concurrency_scope": scope,
            "default_max_concurrency": default_max,
        }

    def logging_settings(self) -> dict[str, object]:
        return {
            "level": self._get_str("logging", "level", "INFO"),
            "json": self._get_bool("logging", "json", True),
        }

    def agent_session_settings(self) -> dict[str, object]:
        backend = self._get_str("agent_sessions", "backend", "external").strip().lower()
        if backend not in ("external", "langgraph"):
            raise ValueError(f"agent_sessions.backend must be 'external' or 'langgraph', got {backend!r}")
        return {
            "backend": backend,
            "max_workers": self._get_int("agent_sessions", "max_workers", 2),
        }

    def agent_defaults(self) -> dict[str, object]:
        session_prompt = self._prompts.get("agent_session", {})
        prompt_text = session_prompt.get("system_prompt") if isinstance(session_prompt, dict) else None
        return {
            "model": self._get_str("agent_defaults", "model", "qwen2.5:1.5b"),
            "system_prompt": self._get_str(
                "agent_defaults",
                "system_prompt",
                prompt_text if isinstance(prompt_text, str) else DEFAULT_SYSTEM_PROMPT,
            ),
            "num_ctx": self._get_int("agent_defaults", "num_ctx", 2048),
            "num_predict": self._get_int("agent_defaults", "num_predict", 256),
            "temperature": self._get_float("agent_defaults", "temperature", 0.2),
            "tools": self._get_csv("agent_defaults", "tools", ["utc_time", "workflow_variables"]),
            "max_tool_calls": self._get_int("agent_defaults", "max_tool_calls", 6),
        }

    def _get_str(self, section: str, key: str, fallback: str) -> str:
        return self._parser.get(section, key, fallback=fallback)

    def _get_int(self, section: str, key: str, fallback: int) -> int:
        return self._parser.getint(section, key, fallback=fallback)

    def _get_float(self, section: str, key: str, fallback: float) -> float:
        return self._parser.getfloat(section, key, fallback=fallback)

    def _get_bool(self, section: str, key: str, fallback: bool) -> bool:
        return self._parser.getboolean(section, key, fallback=fallback)

    def _get_csv(self, section: str, key: str, fallback: list[str]) -> list[str]:
        value = self._parser.get(section, key, fallback="")
        if not value:
            return list(fallback)
        return [part.strip() for part in value.split(",") if part.strip()]

    def _load_prompts(self, path: Path) -> dict[str, object]:
        if not path.exists():
            return {}
        try:
            raw = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError:
            return {}
        return raw if isinstance(raw, dict) else {}


app_config = AppConfig()
