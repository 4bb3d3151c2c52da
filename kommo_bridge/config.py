from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Auth
    webhook_secret: str = ""
    bridge_secret: str = ""

    # Kommo REST
    kommo_base_url: str = ""
    kommo_subdomain: str = ""
    kommo_access_token: str = ""

    # amoJo Chats API
    kommo_amojo_base: str = "https://amojo.kommo.com"
    kommo_scope_id: str = ""
    kommo_channel_secret: str = ""

    # Assistant backends
    assistant_backend: str = "auto"  # auto, reply_api, threads, chat
    assistant_base_url: str = ""
    assistant_api_key: str = ""
    assistant_timeout_seconds: float = 20.0
    openai_api_key: str = ""
    openai_assistant_id: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_base_url: str = "https://api.openai.com/v1"
    openai_temperature: float = 0.6
    assistant_system_prompt: str = (
        "Eres un asistente amable. Responde breve, claro y útil. "
        "Si falta contexto, pide datos puntuales."
    )

    # Run polling
    run_poll_interval_seconds: float = 0.6
    run_poll_max_attempts: int = 40

    # Turn-taking
    duplicate_cooldown_seconds: float = 8.0
    lock_window_seconds: float = 1.5
    reply_throttle_seconds: float = 3.0
    processing_timeout_seconds: float = 45.0
    processed_id_ttl_seconds: int = 6 * 60 * 60
    history_max_turns: int = 8
    session_ttl_seconds: int = 30 * 24 * 60 * 60

    # Inbound filter
    inbound_default_when_untagged: str = "allow"  # allow, ignore
    internal_author_markers: str = "internal,system,bot,salesbot,robot,manager,operator,outgoing,outbound,out"

    # Session storage
    session_backend: str = "memory"  # memory, redis, sql
    redis_url: str = "redis://localhost:6379/0"
    redis_socket_timeout_seconds: float = 0.5
    database_url: str = "sqlite:///./kommo_bridge.db"

    # Delivery
    delivery_max_attempts: int = 3
    delivery_base_delay_seconds: float = 0.3
    note_chunk_size: int = 8000
    transcript_chunk_size: int = 1200
    note_chunk_pause_seconds: float = 0.2
    audit_note_enabled: bool = False

    # Replies
    fallback_reply: str = "Tuve un detalle técnico. ¿Puedes repetirlo?"
    empty_reply: str = "Listo, ¿algo más?"

    # Alerts
    alert_bot_token: str = ""
    alert_chat_id: str = ""

    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def internal_markers(self) -> set[str]:
        return {m.strip().lower() for m in self.internal_author_markers.split(",") if m.strip()}

    @property
    def effective_bridge_secret(self) -> str:
        return self.bridge_secret or self.webhook_secret


settings = Settings()
