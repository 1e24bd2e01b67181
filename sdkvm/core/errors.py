"""
错误类型模块。

定义候选管理引擎使用的全部异常类型。各组件抛出最具体的类型，
引擎只补充候选名称和版本号等上下文，不会降低错误的具体程度。
"""

from typing import Optional


class SdkvmError(Exception):
    """
    引擎错误基类。

    属性:
        candidate: 相关的候选名称（可选）
        version: 相关的版本号（可选）
        retryable: 调用方是否可以安全地重试该操作
    """

    retryable = False

    def __init__(self, message: str = "", candidate: Optional[str] = None, version: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.candidate = candidate
        self.version = version

    def with_context(self, candidate: Optional[str] = None, version: Optional[str] = None) -> "SdkvmError":
        """
        补充缺失的候选名称和版本号上下文。

        参数:
            candidate: 候选名称
            version: 版本号

        返回:
            异常自身，便于直接 raise
        """
        if self.candidate is None:
            self.candidate = candidate
        if self.version is None:
            self.version = version
        return self

    def __str__(self) -> str:
        context = "/".join(part for part in (self.candidate, self.version) if part)
        if context:
            return f"[{context}] {self.message}"
        return self.message


class NetworkError(SdkvmError):
    """网络错误异常，属于临时错误。"""
    retryable = True


class CatalogTimeout(NetworkError):
    """获取远程目录超时异常。"""
    pass


class ParseError(SdkvmError):
    """远程目录数据格式错误异常，目录内容变化前重试无意义。"""
    pass


class DownloadError(SdkvmError):
    """下载错误异常。"""
    retryable = True


class DownloadTimeout(DownloadError):
    """下载超过调用方给定的截止时间。"""
    pass


class ChecksumError(SdkvmError):
    """安装包校验失败异常，重新下载后可重试。"""
    retryable = True


class ExtractError(SdkvmError):
    """安装包解压失败异常，重新下载后可重试。"""
    retryable = True


class DiskSpaceError(SdkvmError):
    """磁盘空间不足异常，需要在外部解决。"""
    pass


class StorageError(SdkvmError):
    """本地清单或文件系统读写错误异常。"""
    pass


class OperationCancelled(SdkvmError):
    """操作被调用方取消。"""
    retryable = True


class UnknownCandidate(SdkvmError):
    """候选未在配置中声明。"""
    pass


class NotInstalled(SdkvmError):
    """版本未安装异常。"""
    pass


class UnknownVersion(SdkvmError):
    """远程目录中不存在该版本。"""
    pass


class NoDefaultSet(SdkvmError):
    """候选未设置默认版本。"""
    pass


class CannotRemoveDefault(SdkvmError):
    """不能卸载当前默认版本，需要先切换默认版本。"""
    pass


class InUse(SdkvmError):
    """版本正在作为默认版本使用。"""
    pass


class StaleCatalog(SdkvmError):
    """远程目录缓存过期，无法解析 latest。"""
    retryable = True
