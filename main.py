# main.py
import argparse
import logging
import signal
import sys
import time
from logging.handlers import RotatingFileHandler

import requests

from core.config_manager import get_app_data_dir, get_config

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(config):
    """Настраивает логирование ДО всех операций с ротацией"""
    logging_config = config.get_logging_config()

    logs_dir = get_app_data_dir() / "logs"
    logs_dir.mkdir(exist_ok=True)

    file_handler = RotatingFileHandler(
        logs_dir / "paper_reader_proxy.log",
        maxBytes=logging_config.get('max_bytes', 5 * 1024 * 1024),
        backupCount=logging_config.get('backup_count', 5),
        encoding='utf-8'
    )
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))

    logging.basicConfig(
        level=logging_config.get('level', 'INFO'),
        handlers=[console_handler, file_handler],
        force=True
    )


def setup_exception_handler():
    """Настраивает глобальный обработчик исключений"""

    def exception_handler(exc_type, exc_value, exc_traceback):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_traceback)
            return

        logger.critical("Необработанное исключение:",
                        exc_info=(exc_type, exc_value, exc_traceback))

    sys.excepthook = exception_handler


def serve(config) -> int:
    """Запускает прокси и держит процесс до Ctrl+C / SIGTERM"""
    from core.proxy_manager import ProxyManager

    proxy_manager = ProxyManager(config)
    if not proxy_manager.start():
        logger.error(
            f"❌ Proxy failed to start: {proxy_manager.last_error_type}"
            f" ({proxy_manager.last_error_details})"
        )
        return 1

    def handle_sigterm(signum, frame):
        raise KeyboardInterrupt

    signal.signal(signal.SIGTERM, handle_sigterm)

    logger.info("Нажмите Ctrl+C для остановки")
    try:
        while proxy_manager.is_running:
            time.sleep(0.5)
    except KeyboardInterrupt:
        logger.info("🛑 Завершение работы по сигналу")
    finally:
        proxy_manager.stop()

    return 0


def check(config) -> int:
    """Проверяет запущенный прокси через /health"""
    proxy_config = config.get_proxy_config()
    scheme = 'https' if proxy_config.get('ssl_enabled') else 'http'
    health_url = f"{scheme}://{proxy_config.get('host')}:{proxy_config.get('local_port')}/health"

    try:
        # Самоподписанный сертификат не проверяем; системный прокси для localhost отключен
        response = requests.get(
            health_url,
            timeout=5,
            verify=False,
            proxies={"http": None, "https": None}
        )
        response.raise_for_status()
        data = response.json()
    except requests.RequestException as e:
        logger.error(f"❌ Proxy is unreachable at {health_url}: {e}")
        return 1

    stats = data.get('stats', {})
    logger.info(
        f"✅ Proxy is {data.get('status')}\n"
        f"   Timestamp: {data.get('timestamp')}\n"
        f"   Requests: {stats.get('requests')}\n"
        f"   Responses: {stats.get('responses')}\n"
        f"   Errors: {stats.get('errors')}"
    )
    return 0


def build_parser():
    parser = argparse.ArgumentParser(
        prog='paper-reader-proxy',
        description='Content proxy for embedding remote paper pages in the reader'
    )
    parser.add_argument('--config', help='Path to config.json')

    subparsers = parser.add_subparsers(dest='command')

    serve_parser = subparsers.add_parser('serve', help='Run the proxy in the foreground')
    serve_parser.add_argument('--host', help='Bind address')
    serve_parser.add_argument('--port', type=int, help='Listen port')
    serve_parser.add_argument('--endpoint', help='Proxy endpoint path, e.g. /api/proxy')

    subparsers.add_parser('check', help='Query /health of a running proxy')

    return parser


def main(argv=None):
    """Основная функция приложения"""
    args = build_parser().parse_args(argv)

    config = get_config(args.config)

    if args.command == 'serve' or args.command is None:
        if getattr(args, 'host', None):
            config.set('proxy.host', args.host)
        if getattr(args, 'port', None):
            config.set('proxy.local_port', args.port)
        if getattr(args, 'endpoint', None):
            config.set('proxy.endpoint', args.endpoint)

    setup_logging(config)
    setup_exception_handler()

    if args.command == 'check':
        return check(config)

    logger.info("🚀 Запуск Paper Reader Proxy")
    return serve(config)


if __name__ == "__main__":
    sys.exit(main())
