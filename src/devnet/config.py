"""
配置加载模块：支持 .env、环境变量、工作目录 devnet.json（或 CONFIG_FILE 指定）多来源合并。
公开接口：
- Config: 读取配置的设置类
- get_config(): 进程内只构建一次的配置实例
内部方法：
- Config.settings_customise_sources: 自定义配置来源顺序
- Config.parse_source_dirs: 将字符串/JSON 解析为 List[Path]
"""

from __future__ import annotations

import json
import os
import re
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, Dict, List, Tuple

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict, PydanticBaseSettingsSource

from .orchestrator.schemas import ConflictPolicy, RedeployPolicy


class Config(BaseSettings):
    rpc_host: str = "127.0.0.1"
    rpc_port: int = Field(default=8899, validation_alias=AliasChoices("rpc_port", "VALIDATOR_PORT", "RPC_PORT"))
    websocket_port: int = 8900
    faucet_port: int = 9900

    ledger_dir: Path = Path("./.ledger")
    wallets_dir: Path = Path("./wallets")
    log_file: Path = Path("./validator.log")

    program_name: str = "counter"
    program_build_dir: Path = Path("./target/deploy")
    program_source_dirs: Annotated[List[Path], NoDecode] = [
        Path("./programs/counter"),
        Path("./counter"),
        Path("../programs/counter"),
    ]

    descriptor_file: Path = Path(".env.devnet")
    deployment_record_file: Path = Path(".env.program")
    remote_rpc_url: str = Field(
        default="https://api.devnet.solana.com",
        validation_alias=AliasChoices("remote_rpc_url", "REMOTE_RPC_URL"),
    )

    health_check_attempts: int = 30
    health_check_interval: float = 1.0
    conflict_grace_seconds: float = 2.0

    deploy_max_attempts: int = 3
    deploy_retry_delay: float = 5.0
    remedial_airdrop_sol: float = 1
    state_account_lamports: int = 100_000_000

    agent_funding_sol: float = 100
    receiver_funding_sol: float = 50
    airdrop_retry_delay: float = 2.0

    conflict_policy: ConflictPolicy = ConflictPolicy.ABORT
    redeploy_policy: RedeployPolicy = RedeployPolicy.ABORT

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("program_source_dirs", mode="before")
    @classmethod
    def parse_source_dirs(cls, value: Any) -> List[Path]:
        """支持从环境变量以 JSON 或分隔符（逗号/分号/空白）解析候选源码目录。"""
        if value is None or value == "":
            return []
        if isinstance(value, list):
            return [Path(v) for v in value]
        if isinstance(value, str):
            text = value.strip()
            try:
                loaded = json.loads(text)
                if isinstance(loaded, list):
                    return [Path(v) for v in loaded]
            except json.JSONDecodeError:
                pass
            return [Path(p) for p in re.split(r"[\s,;]+", text) if p]
        return value

    @property
    def local_rpc_url(self) -> str:
        return f"http://{self.rpc_host}:{self.rpc_port}"

    @property
    def websocket_url(self) -> str:
        return f"ws://{self.rpc_host}:{self.websocket_port}"

    @property
    def faucet_url(self) -> str:
        return f"http://{self.rpc_host}:{self.faucet_port}"

    @property
    def pid_file(self) -> Path:
        """PID 记录文件，位于账本目录下，供后续独立调用发送信号。"""
        return self.ledger_dir / "validator.pid"

    @property
    def agent_wallet_path(self) -> Path:
        return self.wallets_dir / "agent-wallet.json"

    @property
    def receiver_wallet_path(self) -> Path:
        return self.wallets_dir / "receiver-wallet.json"

    @property
    def program_artifact_path(self) -> Path:
        return self.program_build_dir / f"{self.program_name}.so"

    @property
    def program_keypair_path(self) -> Path:
        return self.program_build_dir / f"{self.program_name}-keypair.json"

    @property
    def state_account_keypair_path(self) -> Path:
        return self.program_build_dir / f"{self.program_name}-account-keypair.json"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        """自定义配置来源顺序：入参 > 环境变量 > .env > devnet.json > secrets。"""

        class JsonFileSettingsSource(PydanticBaseSettingsSource):
            """从工作目录的 devnet.json（或 CONFIG_FILE 指定路径）加载配置的自定义 Source。"""

            def __init__(self, settings_cls):
                super().__init__(settings_cls)
                self._data: Dict[str, Any] | None = None

            def _load(self) -> None:
                if self._data is not None:
                    return
                cfg_path = os.environ.get("CONFIG_FILE")
                path = Path(cfg_path) if cfg_path else Path.cwd() / "devnet.json"
                if not path.exists():
                    self._data = {}
                    return
                from loguru import logger

                try:
                    with path.open("r", encoding="utf-8") as f:
                        data = json.load(f)
                except (OSError, json.JSONDecodeError) as e:
                    logger.warning(f"读取配置文件失败，已忽略：{path}，错误：{e}")
                    self._data = {}
                    return
                if not isinstance(data, dict):
                    logger.warning(f"配置文件顶层必须是对象，已忽略：{path}")
                    self._data = {}
                    return
                known = self.settings_cls.model_fields
                unknown = sorted(k for k in data if k not in known)
                if unknown:
                    logger.warning(f"{path} 中存在未知配置项，已忽略：{', '.join(unknown)}")
                self._data = {k: v for k, v in data.items() if k in known}

            def __call__(self) -> Dict[str, Any]:
                self._load()
                return dict(self._data or {})

            def get_field_value(self, field, field_name):  # type: ignore[override]
                """按字段名返回 devnet.json 中的值。"""
                self._load()
                data = self._data or {}
                if field_name in data:
                    return data[field_name], field_name, True
                return None, field_name, False

        return (
            init_settings,
            env_settings,
            dotenv_settings,
            JsonFileSettingsSource(settings_cls),
            file_secret_settings,
        )


@lru_cache(maxsize=1)
def get_config() -> Config:
    """启动时读取一次配置，运行期间不再重新读取。"""
    return Config()
