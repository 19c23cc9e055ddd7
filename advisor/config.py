import json
import os
from pathlib import Path
from dotenv import load_dotenv
from pydantic import BaseModel
from typing import Dict, List, Optional


API_KEY_ENV = {
    "groq": ("GROQ_API_KEY",),
    "openrouter": ("OPENROUTER_API_KEY",),
    "gemini": ("GEMINI_API_KEY", "GOOGLE_API_KEY"),
}


class Config(BaseModel):
    # Request limits
    max_message_length: int = 5000
    request_timeout_seconds: float = 300.0

    # Intent parsing
    intent_timeout_seconds: float = 20.0
    intent_max_tokens: int = 1000

    # Execution
    max_concurrent_tasks: int = 4
    agent_task_timeout_seconds: float = 90.0
    skip_dependents_on_failure: bool = True
    plan_cache_enabled: bool = False
    # Route suggestion, onboarding and guided Q&A requests straight to one agent
    context_shortcuts_enabled: bool = True

    # Synthesis
    synthesis_timeout_seconds: float = 60.0
    synthesis_max_tokens: int = 4000
    synthesis_temperature: float = 0.5
    synthesis_merge_fallback: bool = True
    stream_synthesis_tokens: bool = False

    # Agent definitions; None means the bundled YAML documents
    agents_path: Optional[str] = None
    # None uses the definition flagged `generalist: true`
    generalist_agent_id: Optional[str] = None

    # Local (Ollama-compatible) backend
    local_llm_enabled: bool = True
    local_base_url: str = "http://localhost:11434"
    local_model: str = "llama3"
    local_probe_timeout_seconds: float = 2.0
    availability_ttl_seconds: float = 30.0
    background_probe_interval_seconds: int = 0

    # Remote backends, tried in order after the local one
    remote_provider_priority: List[str] = ["groq", "openrouter", "gemini"]
    remote_models: Dict[str, str] = {
        "groq": "llama-3.3-70b-versatile",
        "openrouter": "meta-llama/llama-3.3-70b-instruct",
        "gemini": "gemini-2.0-flash",
    }
    rate_limit_cooldown_seconds: float = 60.0
    backend_retries: int = 1
    backend_retry_delay_seconds: float = 0.5

    log_level: str = "info"

    def api_key_for(self, provider: str) -> Optional[str]:
        for name in API_KEY_ENV.get(provider, ()):
            value = os.environ.get(name)
            if value:
                return value
        return None

    @classmethod
    def load(cls, path: str = "config.json"):
        load_dotenv()
        p = Path(path)
        if p.exists():
            data = json.loads(p.read_text())
        else:
            data = {}
        if os.environ.get("LOCAL_LLM_URL"):
            data.setdefault("local_base_url", os.environ["LOCAL_LLM_URL"])
        if os.environ.get("LOCAL_LLM_MODEL"):
            data.setdefault("local_model", os.environ["LOCAL_LLM_MODEL"])
        return cls(**data)
