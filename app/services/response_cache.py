"""
@description 响应文件缓存
@responsibility 以缓存键为文件名存储响应内容，原子写入，按修改时间计算缓存年龄并清理过期条目
"""

import os
import tempfile
import time
from pathlib import Path

from loguru import logger

from app.core.errors import StorageError

_TEMP_PREFIX = ".tmp-"


class ResponseCache:
    """基于目录的响应缓存，每个缓存键对应一个文件"""

    def __init__(self, directory: str | Path):
        self._directory = Path(directory)
        self._directory.mkdir(mode=0o700, parents=True, exist_ok=True)

    @property
    def directory(self) -> Path:
        return self._directory

    def put(self, key: str, data: bytes) -> None:
        """写入缓存（先写临时文件再重命名，读者不会看到写了一半的内容）"""
        target = self._directory / key
        try:
            fd, tmp_path = tempfile.mkstemp(dir=self._directory, prefix=_TEMP_PREFIX)
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, target)
            except BaseException:
                Path(tmp_path).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StorageError(f"写入缓存失败: {key}: {e}") from e

    def get(self, key: str) -> tuple[bytes, int]:
        """
        读取缓存

        Returns:
            tuple: (内容, 缓存年龄秒数)，未命中时返回 (b"", -1)
        """
        target = self._directory / key
        try:
            mtime = target.stat().st_mtime
            data = target.read_bytes()
        except FileNotFoundError:
            # 包括 stat 之后、读取之前被清理掉的情况
            return b"", -1

        age = max(0, int(time.time() - mtime))
        return data, age

    def sweep(self, max_age: int) -> int:
        """
        删除年龄超过 max_age 秒的缓存条目

        条目在被选中和被删除之间可能刚好被刷新，此时只会多一次缓存未命中。

        Returns:
            int: 删除的条目数量
        """
        now = time.time()
        deleted = 0
        for entry in self._directory.iterdir():
            if entry.name.startswith(_TEMP_PREFIX):
                continue
            try:
                # 与 get() 一致，按整秒计算年龄
                age = int(now - entry.stat().st_mtime)
                if age > max_age:
                    entry.unlink()
                    deleted += 1
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning(f"删除过期缓存失败: {entry.name}: {e}")

        if deleted:
            logger.info(f"已清理 {deleted} 个过期缓存条目")
        return deleted

    def count(self) -> int:
        """当前缓存条目数量"""
        return sum(
            1 for entry in self._directory.iterdir()
            if not entry.name.startswith(_TEMP_PREFIX)
        )
