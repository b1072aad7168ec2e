"""
@description 配置管理模块
@responsibility 加载和验证 config.yaml，首次运行生成占位配置，报表密码变更时回写
"""

import os
import sys
import tempfile
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator


class CognosConfig(BaseModel):
    """Cognos 连接配置"""

    url: str = Field(..., description="Cognos 服务器基础 URL")
    namespace: str = Field(default="esp", description="登录时选择的 CAM 命名空间")
    user_passwords: dict[str, str] = Field(
        ..., description="Cognos 用户名到密码的映射（用户名如 DOMAIN\\user）"
    )
    retry_delay: int = Field(default=5, ge=0, description="失败请求重试间隔（秒）")
    retry_count: int = Field(default=3, description="失败请求重试次数，负数表示无限重试")
    http_timeout: int = Field(default=300, gt=0, description="单个 HTTP 请求超时（秒）")
    concurrent_requests: int = Field(
        default=1, ge=1, description="单个会话同时进行的最大请求数"
    )

    @field_validator("user_passwords")
    @classmethod
    def _require_user(cls, value: dict[str, str]) -> dict[str, str]:
        if not value:
            raise ValueError("至少需要配置 1 个 Cognos 用户")
        return value


class CacheConfig(BaseModel):
    """响应缓存配置"""

    directory: str = Field(default="./cache", description="缓存文件目录")
    max_age: int = Field(default=3600, ge=0, description="默认最大缓存时间（秒）")
    sweep_interval: int = Field(default=600, gt=0, description="过期缓存清理间隔（秒）")
    ledger_url: str = Field(
        default="sqlite+aiosqlite:///./db/usage.db", description="使用记录数据库 URL"
    )


class Config(BaseModel):
    """全局配置"""

    master_password: str = Field(..., description="主密码，可访问任意报表并生成报表密码")
    report_passwords: dict[str, str] = Field(
        default_factory=dict, description="报表路径到报表密码的映射"
    )
    cognos: CognosConfig = Field(..., description="Cognos 连接配置")
    cache: CacheConfig = Field(default_factory=CacheConfig, description="缓存配置")


def get_config_path() -> Path:
    """获取配置文件路径"""
    # 优先使用 CONFIG_PATH 环境变量，否则使用项目根目录的 config.yaml
    if config_path_str := os.environ.get("CONFIG_PATH"):
        return Path(config_path_str)
    return Path(__file__).parent.parent.parent / "config.yaml"


def load_config(config_path: Path | None = None) -> Config:
    """加载配置文件"""
    config_path = config_path or get_config_path()

    # 配置文件不存在时生成占位配置并退出
    if not config_path.exists():
        _generate_config_template(config_path)
        print(f"错误: 配置文件不存在: {config_path}")
        print(f"已生成占位配置，请填写后重新启动: {config_path}")
        sys.exit(1)

    with open(config_path, encoding="utf-8") as f:
        config_data = yaml.safe_load(f) or {}

    return Config(**config_data)


def save_config(config: Config, config_path: Path) -> None:
    """将配置原子地写回磁盘（权限 0600）"""
    content = yaml.safe_dump(
        config.model_dump(), allow_unicode=True, sort_keys=False
    )
    fd, tmp_path = tempfile.mkstemp(
        dir=config_path.parent, prefix=f".{config_path.name}.", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, config_path)
    except BaseException:
        Path(tmp_path).unlink(missing_ok=True)
        raise


def _generate_config_template(config_path: Path) -> None:
    """生成占位配置文件"""
    template_content = """# 主密码：可访问任意报表，首次用主密码访问某报表时会自动生成该报表的专属密码
master_password: ""

# 报表专属密码（自动生成，一般无需手工编辑）
report_passwords: {}

# Cognos 相关配置
cognos:
  # Cognos 服务器基础 URL
  url: "https://cognos.example.org"
  # 登录时选择的命名空间
  namespace: "esp"
  # Cognos 账号（用户名 -> 密码），至少 1 个
  user_passwords:
    "DOMAIN\\\\user": "password"
  # 失败请求的重试间隔（秒）
  retry_delay: 5
  # 失败请求的重试次数，-1 表示无限重试
  retry_count: 3
  # 单个 HTTP 请求超时（秒），报表生成可能需要较长时间
  http_timeout: 300
  # 单个会话同时进行的最大请求数
  concurrent_requests: 1

# 响应缓存配置
cache:
  # 缓存文件目录
  directory: "./cache"
  # 请求未指定 Cache-Control 时的最大缓存时间（秒），也是过期清理的阈值
  max_age: 3600
  # 过期缓存清理间隔（秒）
  sweep_interval: 600
  # 使用记录数据库（用于缓存预热）
  ledger_url: "sqlite+aiosqlite:///./db/usage.db"
"""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w", encoding="utf-8") as f:
        f.write(template_content)
    os.chmod(config_path, 0o600)
