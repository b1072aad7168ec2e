"""
@description 网关异常定义
@responsibility 定义核心组件抛出的类型化异常，前端据此映射 HTTP 状态码
"""


class GatewayError(Exception):
    """网关异常基类"""

    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AuthenticationError(GatewayError):
    """调用方密码缺失或无效"""

    status_code = 401


class MalformedInputError(GatewayError):
    """请求参数无法解析（Cache-Control、路径、CSV 结构）"""

    status_code = 400


class NotFoundError(GatewayError):
    """路径无法解析为文件夹或报表"""

    status_code = 404


class RemoteObjectNotFound(NotFoundError):
    """Cognos 中不存在路径对应的对象"""


class UnknownUserError(NotFoundError):
    """路径指定的 Cognos 用户未在配置中"""


class NotCachedError(NotFoundError):
    """only-if-cached 请求未命中缓存"""

    status_code = 504


class RemoteUnavailableError(GatewayError):
    """Cognos 请求在重试耗尽后仍然失败"""

    status_code = 502


class RemoteAuthenticationError(RemoteUnavailableError):
    """Cognos 登录或账户 ID 获取失败"""


class StorageError(GatewayError):
    """缓存写入失败"""

    status_code = 500
