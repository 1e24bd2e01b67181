"""
Sdkvm 命令行接口模块。
"""

import argparse
import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from sdkvm import __version__
from sdkvm.core.candidate_engine import CandidateEngine
from sdkvm.core.config_manager import ConfigManager, ConfigSaveError, ConfigValidationError
from sdkvm.core.errors import SdkvmError
from sdkvm.utils.logger import get_logger, set_log_level

logger = get_logger()


def create_parser() -> argparse.ArgumentParser:
    """
    创建并配置命令行参数解析器。

    返回:
        配置好的 ArgumentParser 实例
    """
    parser = argparse.ArgumentParser(
        prog="sdkvm",
        description="Sdkvm - SDK 版本管理器",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
示例:
  sdkvm candidates              列出所有候选
  sdkvm refresh                 刷新远程版本目录
  sdkvm list java               列出 Java 的全部版本
  sdkvm list java --installed   只列出已安装的 Java 版本
  sdkvm install java            安装最新的 Java 版本
  sdkvm install java 21.0.1     安装 Java 21.0.1
  sdkvm use java 21.0.1         将 Java 默认版本切换到 21.0.1
  sdkvm uninstall java 17.0.2   卸载 Java 17.0.2
  sdkvm config                  显示当前配置
        """,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="启用详细输出",
    )

    parser.add_argument(
        "--config",
        "-c",
        type=str,
        default=None,
        help="配置目录路径（默认为 SDKVM_HOME 或 ~/.sdkvm）",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        title="命令",
        description="可用的 CLI 命令",
    )

    candidates_parser = subparsers.add_parser(
        "candidates",
        help="列出所有已配置的候选",
    )
    candidates_parser.add_argument(
        "filter",
        nargs="?",
        default=None,
        help="过滤关键词",
    )
    candidates_parser.add_argument(
        "--installed",
        action="store_true",
        help="只显示已安装版本的候选",
    )
    _add_format_argument(candidates_parser)

    list_parser = subparsers.add_parser(
        "list",
        help="列出候选的版本",
    )
    list_parser.add_argument(
        "candidate",
        help="候选名称",
    )
    list_parser.add_argument(
        "filter",
        nargs="?",
        default=None,
        help="过滤关键词（空格分隔，需全部匹配版本号或发行商）",
    )
    list_parser.add_argument(
        "--installed",
        action="store_true",
        help="只显示已安装的版本",
    )
    list_parser.add_argument(
        "--downloaded",
        action="store_true",
        help="只显示保留了安装包的版本",
    )
    list_parser.add_argument(
        "--default",
        action="store_true",
        help="只显示默认版本",
    )
    _add_format_argument(list_parser)

    install_parser = subparsers.add_parser(
        "install",
        help="下载并安装指定版本",
    )
    install_parser.add_argument(
        "candidate",
        help="候选名称",
    )
    install_parser.add_argument(
        "version",
        nargs="?",
        default="latest",
        help="要安装的版本（默认为 latest）",
    )
    install_parser.add_argument(
        "--timeout",
        "-t",
        type=float,
        default=None,
        help="下载截止时间（秒）",
    )

    uninstall_parser = subparsers.add_parser(
        "uninstall",
        help="卸载指定版本",
    )
    uninstall_parser.add_argument(
        "candidate",
        help="候选名称",
    )
    uninstall_parser.add_argument(
        "version",
        help="要卸载的版本",
    )

    use_parser = subparsers.add_parser(
        "use",
        help="切换默认版本",
    )
    use_parser.add_argument(
        "candidate",
        help="候选名称",
    )
    use_parser.add_argument(
        "version",
        help="要设为默认的版本",
    )

    default_parser = subparsers.add_parser(
        "default",
        help="显示或清除默认版本",
    )
    default_parser.add_argument(
        "candidate",
        help="候选名称",
    )
    default_parser.add_argument(
        "--clear",
        action="store_true",
        help="清除默认版本",
    )

    refresh_parser = subparsers.add_parser(
        "refresh",
        help="刷新远程版本目录",
    )
    refresh_parser.add_argument(
        "candidate",
        nargs="?",
        default=None,
        help="候选名称（省略则刷新全部）",
    )

    config_parser = subparsers.add_parser(
        "config",
        help="显示或编辑配置",
    )
    config_parser.add_argument(
        "--set",
        "-s",
        type=str,
        help="设置配置值（格式：key=value，key 相对于 settings）",
    )
    config_parser.add_argument(
        "--get",
        "-g",
        type=str,
        help="读取配置值（key 相对于 settings）",
    )

    return parser


def _add_format_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--format",
        "-f",
        choices=["json", "simple"],
        default="simple",
        help="输出格式",
    )


def run_cli(args: argparse.Namespace, engine: Optional[CandidateEngine] = None) -> int:
    """
    运行命令行接口。

    参数:
        args: 解析后的命令行参数
        engine: 引擎实例，省略时根据 --config 创建

    返回:
        退出码（0 表示成功）
    """
    if args.verbose:
        set_log_level(logging.DEBUG)

    if args.command is None:
        print("未指定命令。使用 --help 查看帮助信息。")
        return 1

    command_handlers = {
        "candidates": handle_candidates,
        "list": handle_list,
        "install": handle_install,
        "uninstall": handle_uninstall,
        "use": handle_use,
        "default": handle_default,
        "refresh": handle_refresh,
    }

    if args.command == "config":
        try:
            return handle_config(args, ConfigManager(args.config))
        except (ConfigValidationError, ConfigSaveError) as e:
            print(f"配置错误: {e}")
            return 1

    handler = command_handlers.get(args.command)
    if handler is None:
        print(f"未知命令: {args.command}")
        return 1

    owns_engine = engine is None
    try:
        if engine is None:
            engine = CandidateEngine(ConfigManager(args.config))
        return handler(args, engine)
    except SdkvmError as e:
        logger.error(f"命令 {args.command} 执行失败: {e}")
        print(f"错误: {e}")
        return 1
    finally:
        if owns_engine and engine is not None:
            engine.close()


def handle_candidates(args: argparse.Namespace, engine: CandidateEngine) -> int:
    """
    处理 candidates 命令：列出候选、已安装数量和默认版本。
    """
    summaries = engine.list_candidates(filter=args.filter, installed_only=args.installed)

    if args.format == "json":
        print(json.dumps([s.to_dict() for s in summaries], indent=2, ensure_ascii=False))
        return 0

    if not summaries:
        print("没有匹配的候选")
        return 0
    print("已配置候选:")
    for summary in summaries:
        print(f"  {summary.candidate.id} ({summary.candidate.name}): "
              f"已安装 {summary.installed} 个，默认版本 {summary.default or '未设置'}")
        if args.verbose:
            print(f"    根目录: {summary.candidate.root}")
    return 0


def handle_list(args: argparse.Namespace, engine: CandidateEngine) -> int:
    """
    处理 list 命令：列出候选的远程和本地版本。

    参数:
        args: 解析后的命令行参数
        engine: 引擎实例

    返回:
        退出码
    """
    candidate = args.candidate.lower()
    versions = engine.list_versions(
        candidate,
        filter=args.filter,
        installed_only=args.installed,
        downloaded_only=args.downloaded,
        default_only=args.default,
    )

    if args.format == "json":
        print(json.dumps([v.to_dict() for v in versions], indent=2, ensure_ascii=False))
        return 0

    if not versions:
        print(f"未找到 {candidate} 的版本")
        if engine.catalog.current().age(candidate) is None:
            print("提示：远程目录尚未刷新，可以运行 sdkvm refresh")
        return 0

    print(f"{candidate} 版本:")
    for v in versions:
        marker = " *" if v.is_default else "  "
        flags = [v.status.value]
        if not v.managed:
            flags.append("外部")
        if v.downloaded:
            flags.append("已保留安装包")
        vendor = f" [{v.vendor}]" if v.vendor else ""
        print(f"{marker} {v.version}{vendor} ({', '.join(flags)})")
        if args.verbose and v.path:
            print(f"     路径: {v.path}")
        if v.reason:
            print(f"     原因: {v.reason}")
    default = engine.get_default(candidate)
    print(f"\n默认版本: {default.version if default else '未设置'}")
    return 0


def handle_install(args: argparse.Namespace, engine: CandidateEngine) -> int:
    """
    处理 install 命令：下载并安装指定版本，Ctrl+C 取消安装。
    """
    candidate = args.candidate.lower()
    print(f"正在安装 {candidate} {args.version}...")

    def progress(downloaded: int, total: int):
        if total <= 0:
            print(f"\r已下载 {downloaded} 字节", end="", flush=True)
            return
        percent = int(downloaded / total * 100)
        bar_len = 40
        filled = int(bar_len * percent / 100)
        bar = "=" * filled + "-" * (bar_len - filled)
        print(f"\r[{bar}] {percent}% ({downloaded}/{total} 字节)", end="", flush=True)

    def status(message: str):
        print(f"\n{message}", flush=True)

    cancel_event = threading.Event()
    with ThreadPoolExecutor(max_workers=1) as executor:
        future = executor.submit(
            engine.install,
            candidate,
            args.version,
            cancel_event=cancel_event,
            timeout=args.timeout,
            progress_callback=progress,
            status_callback=status,
        )
        try:
            entry = future.result()
        except KeyboardInterrupt:
            print("\n正在取消安装...")
            cancel_event.set()
            entry = future.result()

    print(f"\n成功安装 {candidate} {entry.version}: {entry.path}")
    if engine.get_default(candidate) is None:
        print(f"提示：可以运行 sdkvm use {candidate} {entry.version} 设为默认版本")
    return 0


def handle_uninstall(args: argparse.Namespace, engine: CandidateEngine) -> int:
    """处理 uninstall 命令：卸载指定版本。"""
    candidate = args.candidate.lower()
    print(f"正在卸载 {candidate} {args.version}...")
    engine.uninstall(candidate, args.version)
    print(f"成功卸载 {candidate} {args.version}")
    return 0


def handle_use(args: argparse.Namespace, engine: CandidateEngine) -> int:
    """处理 use 命令：切换默认版本。"""
    candidate = args.candidate.lower()
    entry = engine.set_default(candidate, args.version)
    print(f"已将 {candidate} 的默认版本切换到 {entry.version}")
    return 0


def handle_default(args: argparse.Namespace, engine: CandidateEngine) -> int:
    candidate = args.candidate.lower()
    if args.clear:
        engine.clear_default(candidate)
        print(f"已清除 {candidate} 的默认版本")
        return 0

    default = engine.get_default(candidate)
    if default is None:
        print(f"{candidate} 未设置默认版本")
    else:
        print(f"{candidate} 默认版本: {default.version}")
        if args.verbose:
            print(f"  路径: {default.path}")
    return 0


def handle_refresh(args: argparse.Namespace, engine: CandidateEngine) -> int:
    """处理 refresh 命令：刷新远程版本目录。"""
    target = args.candidate.lower() if args.candidate else None
    print(f"正在刷新 {target or '全部候选'} 的远程目录...")
    snapshot = engine.refresh(target)
    for candidate in ([target] if target else list(engine.candidates)):
        print(f"  {candidate}: {len(snapshot.versions_for(candidate))} 个版本")
    return 0


def handle_config(args: argparse.Namespace, config_manager: ConfigManager) -> int:
    """
    处理 config 命令：显示或编辑配置。

    参数:
        args: 解析后的命令行参数
        config_manager: 配置管理器实例

    返回:
        退出码
    """
    if args.get:
        value = config_manager.get_setting(args.get)
        if value is None:
            print(f"配置项不存在: {args.get}")
            return 1
        print(json.dumps(value, indent=2, ensure_ascii=False))
        return 0

    if args.set:
        key, _, value = args.set.partition("=")
        if not key or not value:
            print("格式无效。请使用: key=value")
            return 1

        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            pass

        config_manager.set_setting(key, value)
        print(f"已设置 {key} = {value}")
        return 0

    print(json.dumps(config_manager.get_config(), indent=2, ensure_ascii=False))
    return 0
