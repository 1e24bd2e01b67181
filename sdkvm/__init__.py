"""
Sdkvm - SDK 版本管理器。

管理多个 SDK 候选的已安装版本、默认版本和远程可用版本。
"""

__version__ = "0.1.0"
