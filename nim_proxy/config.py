import json
import os
from typing import Dict, Optional


def _env_flag(name: str, default: str = "0") -> bool:
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


class Settings:
    def __init__(self) -> None:
        self.upstream_base_url: str = os.environ.get("UPSTREAM_BASE_URL", "https://integrate.api.nvidia.com/v1")
        self.upstream_api_key: Optional[str] = os.environ.get("NVIDIA_API_KEY") or os.environ.get("UPSTREAM_API_KEY")
        # Inbound token clients must present; empty disables the check
        self.auth_token: Optional[str] = os.environ.get("AUTH_TOKEN") or None
        # MODEL_MAP expects a JSON object string mapping Anthropic model names → upstream model names
        model_map_raw = os.environ.get("MODEL_MAP", "{}")
        try:
            self.model_map: Dict[str, str] = json.loads(model_map_raw)
        except Exception:
            self.model_map = {}
        if not isinstance(self.model_map, dict):
            self.model_map = {}
        self.debug: bool = _env_flag("DEBUG_PROXY")
        # Log every outgoing SSE event (very noisy)
        self.debug_sse: bool = _env_flag("DEBUG_SSE")
        self.log_level: str = os.environ.get("LOG_LEVEL", "INFO").strip().upper() or "INFO"
        self.http2: bool = _env_flag("PROXY_HTTP2", "1")
        try:
            self.upstream_timeout: float = float(os.environ.get("UPSTREAM_TIMEOUT", "120"))
        except Exception:
            self.upstream_timeout = 120.0
        self.host: str = os.environ.get("HOST", "0.0.0.0")
        try:
            self.port: int = int(os.environ.get("PORT", "8080"))
        except Exception:
            self.port = 8080
        self.think_open_tag: str = os.environ.get("THINK_OPEN_TAG") or "<think>"
        self.think_close_tag: str = os.environ.get("THINK_CLOSE_TAG") or "</think>"

    @property
    def chat_completions_url(self) -> str:
        return f"{self.upstream_base_url.rstrip('/')}/chat/completions"

    def map_model(self, anthropic_model: str) -> str:
        return self.model_map.get(anthropic_model, anthropic_model)


settings = Settings()
