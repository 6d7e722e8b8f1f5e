from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parent.parent / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- Application ---
    app_name: str = "param-optimizer"
    app_env: str = "development"
    log_level: str = "INFO"
    log_format: str = ""                        # text / json，为空时按 app_env 推断
    log_dir: str = ""                           # 为空时使用项目根目录下 logs/
    log_file_max_bytes: int = 50 * 1024 * 1024
    log_file_backup_count: int = 5
    api_prefix: str = "/api/v1"

    # --- Scoring service (远程回测接口) ---
    scoring_base_url: str = "http://localhost:3000"
    scoring_endpoint: str = "/api/btcdom2/optimize"
    scoring_timeout: float = 120.0              # 单次回测请求超时（秒）

    # --- Search engine ---
    max_concurrent_evaluations: int = 3         # 同时在途的远程评估数
    evaluation_max_attempts: int = 3            # 单个组合最多尝试次数
    evaluation_retry_delay: float = 1.0         # 重试基础延迟（秒），第 n 次重试等待 n 倍
    result_limit: int = 10                      # 排行榜保留的最优结果数
    default_max_iterations: int = 200
    default_time_limit: int = 3600              # 仅用于剩余时间展示，不强制
    exploration_samples: int = 10               # 随机搜索探索阶段样本数上限
    hybrid_coarse_ratio: float = 0.3            # 混合搜索粗网格阶段占比

    # --- CORS ---
    cors_origins: list[str] = ["http://localhost:3000"]


settings = Settings()
