"""Global client settings"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Centralized configuration.
    Reads configs from env variables.
    """

    app_name: str = "LedgerChat Client"
    server_port: int = 8000

    rpc_url: str = "https://api.devnet.solana.com"
    rpc_timeout_s: float = 10.0

    # Base58 address of the on-ledger chat program. Required for a live session.
    program_id: str | None = None

    # External signer holding the wallet keys
    signer_url: str = "http://127.0.0.1:7070/sign"
    # If set, the session is connected for this wallet at startup
    wallet_public_key: str | None = None

    ws_url: str = "wss://solana-chat-ws.example.com"
    enable_websocket: bool = True
    enable_encryption: bool = True

    polling_interval_ms: int = 30000
    reconnect_delay_s: float = 5.0
    reconnect_backoff: float = 2.0
    max_reconnect_delay_s: float = 60.0

    submission_timeout_s: float = 60.0

    # dataSize hints for getProgramAccounts, not authoritative
    message_account_size: int = 300
    group_account_size: int = 200

    model_config = {"env_file": ".env"}


settings = Settings()
