"""
异常定义：同步过程中各类错误的统一分类。
"""


class BuboError(Exception):
    """所有同步错误的基类。"""


class ValidationError(BuboError):
    """操作前缺少必要的标识（如资源 ID）。不重试。"""


class AuthError(BuboError):
    """Token 无效或已过期，且自动刷新后仍然失败。"""


class TransientIOError(BuboError):
    """网络或文件系统错误，不会自动重试。"""

    def __init__(self, message: str, operation: str | None = None, resource_id: str | None = None):
        self.message = message
        self.operation = operation
        self.resource_id = resource_id
        prefix = f"[{resource_id}] " if resource_id else ""
        suffix = f" ({operation})" if operation else ""
        super().__init__(f"{prefix}{message}{suffix}")


class RemoteRequestError(TransientIOError):
    """远程平台返回了非 2xx 响应。"""

    def __init__(self, status_code: int, message: str, operation: str | None = None, resource_id: str | None = None):
        self.status_code = status_code
        super().__init__(f"{status_code}: {message}", operation=operation, resource_id=resource_id)


class ParseError(BuboError):
    """本地或远程 JSON 格式错误，仅影响当前资源。"""

    def __init__(self, message: str, resource_id: str | None = None, path: str | None = None):
        self.message = message
        self.resource_id = resource_id
        self.path = path
        where = f" ({path})" if path else ""
        prefix = f"[{resource_id}] " if resource_id else ""
        super().__init__(f"{prefix}{message}{where}")


class UserCancelled(BuboError):
    """用户中止了交互提示。不是真正的错误，不写入错误日志。"""


class ConfigNotFoundError(BuboError):
    """项目根目录下找不到配置文件。"""
