#!/usr/bin/env python3
"""요청 로그를 색으로 구분해 출력하는 로컬 정적 파일 서버.

디렉터리를 HTTP로 제공하고, 요청마다 HTTP 메서드별 색상으로 한 줄을 출력하며,
SIGINT/SIGQUIT/SIGTERM을 받으면 진행 중인 요청을 마친 뒤 종료한다.
"""

from __future__ import annotations

from contextlib import suppress
from dataclasses import dataclass
from functools import partial
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from types import MappingProxyType
from typing import Callable, Dict, Optional, Sequence
from urllib.parse import urlsplit
import argparse
import logging
import os
import signal
import socket
import sys
import threading

DEFAULT_HOST = "localhost"
DEFAULT_PORT = 8080

# 유휴 대기, 요청 라인과 헤더 읽기 각각에 적용되는 제한 시간(초)
REQUEST_TIMEOUT = 3
SHUTDOWN_POLL_INTERVAL = 0.25

METHOD_COLORS = MappingProxyType({
    "GET": 32,
    "POST": 33,
    "PUT": 35,
    "PATCH": 34,
    "DELETE": 31,
    "HEAD": 36,
})
DEFAULT_COLOR = 30
METHOD_COLUMN_WIDTH = 8

TERMINATION_SIGNALS = tuple(
    getattr(signal, name)
    for name in ("SIGINT", "SIGQUIT", "SIGTERM")
    if hasattr(signal, name)
)

logger = logging.getLogger("serve")

Middleware = Callable[[SimpleHTTPRequestHandler, Callable[[], None]], None]


class DirectoryResolutionError(ValueError):
    """제공할 디렉터리를 결정할 수 없음."""


@dataclass(frozen=True)
class ServerConfig:
    directory: Path
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT

    @property
    def bind_address(self) -> str:
        return f"{self.host}:{self.port}"


def format_request_line(method: str, path: str) -> str:
    """메서드 색상의 굵은 글씨와 고정 폭 정렬로 요청 한 줄을 만든다.

    열 폭보다 긴 메서드는 공백 없이 그대로 출력한다(자르지 않음).
    """
    color = METHOD_COLORS.get(method, DEFAULT_COLOR)
    padding = " " * max(METHOD_COLUMN_WIDTH - len(method), 0)
    return f"\033[1;{color}m{method}{padding}\033[0m{path}"


def log_request_line(handler: SimpleHTTPRequestHandler, call_next: Callable[[], None]) -> None:
    print(format_request_line(handler.command, urlsplit(handler.path).path), flush=True)
    call_next()


DEFAULT_MIDDLEWARE: tuple = (log_request_line,)


class StaticRequestHandler(SimpleHTTPRequestHandler):
    """메서드 처리 전에 미들웨어 파이프라인을 실행하는 파일 핸들러.

    미들웨어는 핸들러와 ``call_next``를 받는다. ``call_next``를 호출하지 않는
    미들웨어는 직접 응답을 보내야 하며, 이 경우 메서드 처리는 건너뛴다.

    요청 라인과 헤더는 ``timeout``초 안에 모두 도착해야 한다. 소켓 타임아웃은
    읽기 한 번에만 걸리므로 조금씩 보내는 클라이언트는 별도 타이머로 끊는다.
    """

    protocol_version = "HTTP/1.1"
    timeout = REQUEST_TIMEOUT

    def __init__(self, *args, middleware: Sequence[Middleware] = (), **kwargs):
        # 부모 생성자가 곧바로 요청을 처리하므로 먼저 설정한다.
        self.middleware = tuple(middleware)
        self._dropped = False
        self._deadline: Optional[threading.Timer] = None
        super().__init__(*args, **kwargs)

    def handle_one_request(self) -> None:
        self._dropped = False
        if not self.server.enter_idle(self):
            self.close_connection = True
            return
        self._deadline = threading.Timer(self.timeout, self.drop_connection)
        self._deadline.daemon = True
        self._deadline.start()
        try:
            super().handle_one_request()
        finally:
            self._deadline.cancel()
            self.server.leave_idle(self)

    def parse_request(self) -> bool:
        self.server.leave_idle(self)
        parsed = super().parse_request()
        self._deadline.cancel()
        if self._dropped:
            self.close_connection = True
            return False
        if not parsed:
            return False
        if self.server.draining:
            self.close_connection = True
        if self._run_middleware():
            return True
        self.close_connection = True
        return False

    def drop_connection(self) -> None:
        """요청을 기다리거나 읽는 중인 연결을 끊는다."""
        self._dropped = True
        with suppress(OSError):
            self.connection.shutdown(socket.SHUT_RDWR)

    def _run_middleware(self) -> bool:
        reached = False

        def call(index: int) -> None:
            nonlocal reached
            if index == len(self.middleware):
                reached = True
                return
            self.middleware[index](self, lambda: call(index + 1))

        call(0)
        return reached

    def log_message(self, format: str, *args) -> None:
        logger.debug("%s - %s", self.address_string(), format % args)

    def log_error(self, format: str, *args) -> None:
        logger.info("%s - %s", self.address_string(), format % args)


class _ThreadingServer(ThreadingHTTPServer):
    # 종료 시 요청 스레드를 join 하여 진행 중인 응답을 끝까지 보낸다.
    daemon_threads = False

    def __init__(self, *args, **kwargs):
        self.draining = False
        self._idle_lock = threading.Lock()
        self._idle: set = set()
        super().__init__(*args, **kwargs)

    def enter_idle(self, handler: StaticRequestHandler) -> bool:
        """다음 요청을 기다리는 연결로 등록한다. 종료 중이면 False."""
        with self._idle_lock:
            if self.draining:
                return False
            self._idle.add(handler)
            return True

    def leave_idle(self, handler: StaticRequestHandler) -> None:
        with self._idle_lock:
            self._idle.discard(handler)

    def drain(self) -> None:
        """새 요청을 받지 않도록 표시하고 유휴 연결을 끊는다."""
        with self._idle_lock:
            self.draining = True
            idle = list(self._idle)
        for handler in idle:
            handler.drop_connection()

    def handle_error(self, request, client_address) -> None:
        if isinstance(sys.exc_info()[1], ConnectionError):
            logger.debug("%s - 클라이언트 연결이 끊어졌습니다", client_address[0], exc_info=True)
            return
        super().handle_error(request, client_address)


class StaticServer:
    """리스닝 소켓과 정상 종료를 관리한다."""

    def __init__(self, config: ServerConfig, middleware: Sequence[Middleware] = DEFAULT_MIDDLEWARE):
        self.config = config
        handler = partial(
            StaticRequestHandler,
            directory=str(config.directory),
            middleware=middleware,
        )
        self._httpd = _ThreadingServer((config.host, config.port), handler)
        self._lock = threading.Lock()
        self._serving = False
        self._closed = False

    @property
    def port(self) -> int:
        return self._httpd.server_address[1]

    @property
    def address(self) -> str:
        return f"{self.config.host}:{self.port}"

    @property
    def closed(self) -> bool:
        return self._closed

    def serve(self) -> None:
        """:meth:`shutdown`이 호출될 때까지 블록한다.

        이미 종료된 서버라면 즉시 반환한다. 정상 종료 외의 오류는 그대로 전파된다.
        """
        with self._lock:
            if self._closed:
                return
            self._serving = True
        try:
            self._httpd.serve_forever(poll_interval=SHUTDOWN_POLL_INTERVAL)
        except Exception:
            self._close()
            raise

    def shutdown(self) -> bool:
        """연결 수락을 멈추고 진행 중인 요청이 끝날 때까지 기다린다.

        유휴 keep-alive 연결은 바로 끊고, 처리 중인 요청은 응답 후 연결을 닫는다.
        :meth:`serve`를 실행 중인 스레드가 아닌 곳에서 호출해야 한다.
        이미 종료되었다면 False를 반환한다.
        """
        with self._lock:
            if self._closed:
                return False
            self._closed = True
            serving = self._serving
        if serving:
            self._httpd.shutdown()
        self._httpd.drain()
        self._httpd.server_close()
        return True

    def _close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._httpd.drain()
        self._httpd.server_close()

    def __enter__(self) -> "StaticServer":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()


class ShutdownSignal:
    """시그널 핸들러, 감시 스레드, 메인 스레드 사이의 일회성 신호.

    ``received``는 첫 종료 시그널에서 설정되고 이후 시그널은 무시한다.
    ``complete``는 서버 종료가 끝난 뒤 한 번만 설정된다.
    """

    def __init__(self):
        # 메인 스레드의 notify() 도중 두 번째 시그널이 들어올 수 있어 재진입 락을 쓴다.
        self._lock = threading.RLock()
        self._received = threading.Event()
        self._complete = threading.Event()
        self.signum: Optional[int] = None

    def notify(self, signum: int) -> bool:
        with self._lock:
            if self._received.is_set():
                return False
            self.signum = signum
            self._received.set()
        return True

    def mark_complete(self) -> None:
        with self._lock:
            if not self._received.is_set():
                raise RuntimeError("종료 시그널을 받기 전에 종료 완료를 표시할 수 없습니다.")
            self._complete.set()

    def wait_received(self, timeout: Optional[float] = None) -> Optional[int]:
        if not self._received.wait(timeout):
            return None
        return self.signum

    def wait_complete(self, timeout: Optional[float] = None) -> bool:
        return self._complete.wait(timeout)

    @property
    def received(self) -> bool:
        return self._received.is_set()

    @property
    def complete(self) -> bool:
        return self._complete.is_set()


def signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return str(signum)


def install_signal_handlers(
    shutdown_signal: ShutdownSignal,
    signals: Sequence[int] = TERMINATION_SIGNALS,
) -> Dict[int, object]:
    """종료 시그널을 ``shutdown_signal``로 전달한다.

    메인 스레드에서만 호출할 수 있다. 이전 핸들러를 반환한다.
    """
    def _handler(signum, _frame):
        shutdown_signal.notify(signum)

    return {signum: signal.signal(signum, _handler) for signum in signals}


def restore_signal_handlers(previous: Dict[int, object]) -> None:
    for signum, handler in previous.items():
        signal.signal(signum, signal.SIG_DFL if handler is None else handler)


class SignalWatcher(threading.Thread):
    """종료 시그널을 기다렸다가 서버를 종료한다."""

    def __init__(self, server: StaticServer, shutdown_signal: ShutdownSignal):
        super().__init__(name="signal-watcher", daemon=True)
        self.server = server
        self.shutdown_signal = shutdown_signal

    def run(self) -> None:
        signum = self.shutdown_signal.wait_received()
        print(f"Received signal #{signum} ({signal_name(signum)}). Shutting down...", flush=True)
        try:
            self.server.shutdown()
        except Exception:
            logger.critical("서버 종료에 실패했습니다", exc_info=True)
            os._exit(1)
        else:
            self.shutdown_signal.mark_complete()


def resolve_directory(argument: Optional[str], fallback_to_cwd: bool = False) -> Path:
    """제공할 디렉터리의 절대 경로: ``argument`` 또는 현재 작업 디렉터리.

    ``argument``가 없거나 디렉터리가 아니면 DirectoryResolutionError를 던진다.
    ``fallback_to_cwd``가 참이면 경고를 남기고 작업 디렉터리를 대신 사용한다.
    """
    try:
        cwd = Path(os.getcwd())
    except OSError as exc:
        raise DirectoryResolutionError(f"현재 작업 디렉터리를 확인할 수 없습니다: {exc}") from exc

    if not argument:
        return cwd

    directory = Path(os.path.abspath(argument))
    if directory.is_dir():
        return directory
    if not fallback_to_cwd:
        raise DirectoryResolutionError(f"제공할 디렉터리를 찾을 수 없습니다: {directory}")

    logger.warning("디렉터리가 아니므로 %s 대신 %s 를 제공합니다", directory, cwd)
    return cwd


def run(config: ServerConfig, middleware: Sequence[Middleware] = DEFAULT_MIDDLEWARE) -> int:
    try:
        server = StaticServer(config, middleware)
    except OSError as exc:
        logger.error("HTTP Server Error: %s", exc)
        return 1

    shutdown_signal = ShutdownSignal()
    previous = install_signal_handlers(shutdown_signal)
    try:
        SignalWatcher(server, shutdown_signal).start()
        print(
            f"Serving files from \033[0;33m{config.directory}\033[0m "
            f"on \033[0;32m{server.address}\033[0m",
            flush=True,
        )
        try:
            server.serve()
        except OSError as exc:
            logger.error("HTTP Server Error: %s", exc)
            return 1
        shutdown_signal.wait_complete()
    finally:
        restore_signal_handlers(previous)

    print("Successfully shutdown. Bye.", flush=True)
    return 0


def port_number(value: str) -> int:
    port = int(value)
    if not 0 <= port <= 65535:
        raise argparse.ArgumentTypeError(f"포트 범위를 벗어났습니다: {port}")
    return port


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="요청 로그를 색으로 구분하는 로컬 정적 파일 서버")
    parser.add_argument(
        "directory",
        nargs="?",
        help="서비스할 디렉터리 경로 (기본값: 현재 작업 디렉터리)",
    )
    parser.add_argument(
        "-p", "--port",
        type=port_number,
        default=DEFAULT_PORT,
        help=f"포트 번호 (기본값: {DEFAULT_PORT}, 0이면 빈 포트 자동 선택)",
    )
    parser.add_argument("--host", default=DEFAULT_HOST, help=f"바인드할 호스트 (기본값: {DEFAULT_HOST})")
    parser.add_argument(
        "--fallback-to-cwd",
        action="store_true",
        help="디렉터리를 확인할 수 없으면 종료하지 않고 현재 작업 디렉터리를 제공",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="접근 로그와 오류 로그 출력")
    return parser.parse_args(argv)


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s: %(message)s",
        stream=sys.stderr,
    )


def main(argv: list[str] | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    configure_logging(args.verbose)
    try:
        directory = resolve_directory(args.directory, args.fallback_to_cwd)
    except DirectoryResolutionError as exc:
        logger.error("%s", exc)
        return 1
    return run(ServerConfig(directory=directory, host=args.host, port=args.port))


if __name__ == "__main__":
    raise SystemExit(main())
