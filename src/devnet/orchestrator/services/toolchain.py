"""
外部工具链封装。

验证节点、密钥生成工具与程序构建/部署工具都被当作不透明的外部协作者，
通过子进程调用。所有调用都经过 Toolchain.run，失败时抛出 ToolchainError，
由调用方包装为具体的错误类型。
"""

from __future__ import annotations

import re
import shutil
import subprocess
from pathlib import Path
from typing import IO, Sequence

from loguru import logger

from ...errors import PrerequisiteMissingError, ToolchainError

PROGRAM_ID_MARKER = re.compile(r"Program Id:\s*(\S+)")
RPC_URL_LINE = re.compile(r"RPC URL:\s*(\S+)")


def check_prerequisites(tools: Sequence[str]) -> None:
    """确保所需外部工具均已安装，否则在产生任何副作用之前失败。"""
    missing = [t for t in tools if shutil.which(t) is None]
    if missing:
        logger.error(f"缺少必需的外部工具：{', '.join(missing)}")
        raise PrerequisiteMissingError(
            f"缺少必需的外部工具：{', '.join(missing)}，请先安装 Solana CLI / Rust 工具链",
            tools=",".join(missing),
        )


class Toolchain:
    """solana / solana-keygen / cargo 命令的薄封装。"""

    def run(
        self,
        cmd: Sequence[str],
        *,
        cwd: Path | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        logger.debug(f"执行命令：{' '.join(str(c) for c in cmd)}")
        try:
            result = subprocess.run(
                [str(c) for c in cmd],
                cwd=str(cwd) if cwd else None,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
            )
        except FileNotFoundError as e:
            raise ToolchainError(cmd, 127, str(e)) from e
        if check and result.returncode != 0:
            raise ToolchainError(cmd, result.returncode, result.stdout or "")
        return result

    def keygen_new(self, outfile: Path) -> None:
        self.run(["solana-keygen", "new", "--no-bip39-passphrase", "--silent", "--force", "--outfile", outfile])

    def pubkey(self, keypair: Path) -> str:
        return self.run(["solana-keygen", "pubkey", keypair]).stdout.strip()

    def airdrop(self, amount: float, address: str, url: str) -> None:
        self.run(["solana", "airdrop", f"{amount:g}", address, "--url", url])

    def balance(self, address: str, url: str) -> str:
        return self.run(["solana", "balance", address, "--url", url]).stdout.strip()

    def config_set_url(self, url: str) -> None:
        self.run(["solana", "config", "set", "--url", url])

    def config_get_url(self) -> str | None:
        out = self.run(["solana", "config", "get"]).stdout
        m = RPC_URL_LINE.search(out)
        return m.group(1) if m else None

    def build_program(self, source_dir: Path, out_dir: Path) -> None:
        self.run(
            [
                "cargo",
                "build-bpf",
                "--manifest-path",
                source_dir / "Cargo.toml",
                "--bpf-out-dir",
                out_dir.resolve(),
            ],
            cwd=source_dir,
        )

    def program_deploy(self, program_keypair: Path, artifact: Path, wallet: Path, url: str) -> subprocess.CompletedProcess[str]:
        """部署程序，不检查退出码：是否成功由输出中的 Program Id 标记决定。"""
        return self.run(
            [
                "solana",
                "program",
                "deploy",
                "--program-id",
                program_keypair,
                artifact,
                "--keypair",
                wallet,
                "--url",
                url,
            ],
            check=False,
        )

    def program_show(self, program_id: str, url: str) -> bool:
        return self.run(["solana", "program", "show", program_id, "--url", url], check=False).returncode == 0

    def account_exists(self, address: str, url: str) -> bool:
        return self.run(["solana", "account", address, "--url", url], check=False).returncode == 0

    def create_account(self, account_keypair: Path, lamports: int, owner: str, wallet: Path, url: str) -> None:
        self.run(
            [
                "solana",
                "create-account",
                account_keypair,
                str(lamports),
                "--owner",
                owner,
                "--keypair",
                wallet,
                "--url",
                url,
            ]
        )

    def spawn_validator(self, args: Sequence[str], log_sink: IO[str]) -> subprocess.Popen:
        """后台启动验证节点，输出重定向到日志文件，脱离当前会话以便编排结束后继续运行。"""
        cmd = ["solana-test-validator", *[str(a) for a in args]]
        logger.info(f"启动验证节点命令：{' '.join(cmd)}")
        try:
            return subprocess.Popen(
                cmd,
                stdout=log_sink,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except FileNotFoundError as e:
            raise ToolchainError(cmd, 127, str(e)) from e

    def kill_matching(self, pattern: str) -> None:
        """尽力终止命令行匹配的进程。"""
        self.run(["pkill", "-f", pattern], check=False)


def parse_program_id(deploy_output: str) -> str | None:
    m = PROGRAM_ID_MARKER.search(deploy_output or "")
    return m.group(1) if m else None
