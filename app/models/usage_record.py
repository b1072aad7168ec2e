"""
@description 报表使用记录模型
@responsibility 记录每个缓存键最近一次被请求的时间，驱动缓存预热
"""

from sqlalchemy import Column, Index, Integer, String, Text

from app.core.database import Base


class UsageRecord(Base):
    __tablename__ = "usage"

    # 缓存键（路径 + 提示参数的摘要）
    hash = Column(String(64), primary_key=True)
    # 规范化路径字符串，如 dsn/public/Folder/Report
    path = Column(String(1024), nullable=False)
    # 提示参数的 JSON 序列化
    prompt_answers = Column(Text, nullable=True)
    last_used = Column(Integer, nullable=False)

    __table_args__ = (Index("ix_usage_last_used", "last_used"),)
