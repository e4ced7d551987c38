from pydantic_settings import BaseSettings


class SyncConfig(BaseSettings):
    api_base_url: str = "http://localhost:8000"
    ws_url: str = "ws://localhost:8000/ws"
    request_timeout_seconds: float = 10.0

    # Pull path
    view_poll_interval_seconds: float = 15.0
    active_poll_interval_seconds: float = 30.0

    # Push path：server 每 server_push_interval_seconds 對每個 Session 送一次 timer_sync
    server_push_interval_seconds: float = 10.0
    connect_timeout_seconds: float = 5.0
    watchdog_interval_seconds: float = 1.0
    reconnect_delay_seconds: float = 2.0

    typing_expiry_seconds: float = 4.0

    @property
    def missed_push_timeout_seconds(self) -> float:
        """超過這段時間沒收到任何事件就視為斷線（1.5 個 push 間隔）"""
        return self.server_push_interval_seconds * 1.5

    class Config:
        env_prefix = "FOCUS_CLIENT_"
