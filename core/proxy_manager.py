# proxy_manager.py
import asyncio
import concurrent.futures
import re
import ssl
import logging
import time
import threading
from datetime import datetime, timezone
from typing import NamedTuple, Optional

from aiohttp import web, ClientSession, TCPConnector, ClientTimeout

from core.config_manager import get_config
from core.proxy.content_rewriter import ContentRewriter
from core.proxy.url_utils import decode_target_url
from utils.port_utils import check_port_availability, get_process_using_port

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = 'application/octet-stream'

_CHARSET_PARAM_PATTERN = re.compile(r';\s*charset=[^;]*', re.IGNORECASE)


class UpstreamResponse(NamedTuple):
    """Ответ upstream сервера, прочитанный целиком"""
    status: int
    reason: str
    content_type: Optional[str]
    body: bytes
    charset: Optional[str] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


def decode_text(body: bytes, charset: Optional[str]) -> str:
    """Декодирует тело в объявленной upstream кодировке (по умолчанию utf-8)"""
    try:
        return body.decode(charset or 'utf-8', errors='replace')
    except LookupError:
        logger.warning(f"⚠️ Unknown charset {charset!r}, decoding as utf-8")
        return body.decode('utf-8', errors='replace')


def utf8_content_type(content_type: str) -> str:
    """Content-Type для перекодированного в utf-8 контента"""
    return _CHARSET_PARAM_PATTERN.sub('', content_type) + '; charset=utf-8'


class ReaderProxy:
    def __init__(self, endpoint='/proxy', fetch_timeout=None):
        """
        Args:
            endpoint: Путь эндпоинта прокси
            fetch_timeout: Таймаут запроса к upstream в секундах (None - без таймаута)
        """
        self.endpoint = endpoint
        self.fetch_timeout = fetch_timeout

        # Connection pool для переиспользования соединений
        self.connector = None
        self.session = None

        # Статистика (только для диагностики)
        self.stats = {
            'total_requests': 0,
            'total_responses': 0,
            'errors': 0
        }

    async def initialize(self):
        """Инициализация connection pool"""
        if self.connector is None:
            # limit=0: зависший upstream не должен занимать слот других запросов
            self.connector = TCPConnector(
                limit=0,
                ttl_dns_cache=300,  # DNS кэш на 5 минут
                keepalive_timeout=60,
                enable_cleanup_closed=True
            )

        if self.session is None:
            # total=None: без таймаута, если он не задан в конфиге
            self.session = ClientSession(
                connector=self.connector,
                timeout=ClientTimeout(total=self.fetch_timeout)
            )

    async def cleanup(self):
        """Очистка ресурсов"""
        if self.session:
            await self.session.close()
            self.session = None
        if self.connector:
            await self.connector.close()
            self.connector = None

    async def fetch_upstream(self, url: str) -> UpstreamResponse:
        """
        Загружает ресурс целиком в память

        Args:
            url: Полностью декодированный URL

        Returns:
            UpstreamResponse: Статус, reason, content-type, тело и кодировка ответа
        """
        await self.initialize()

        async with self.session.get(url) as upstream_response:
            body = await upstream_response.read()
            return UpstreamResponse(
                status=upstream_response.status,
                reason=upstream_response.reason or '',
                content_type=upstream_response.headers.get('Content-Type'),
                body=body,
                charset=upstream_response.charset
            )

    async def handle_proxy(self, request):
        """Обработка GET <endpoint>?url=..."""
        self.stats['total_requests'] += 1

        url = request.query.get('url')
        if not url:
            logger.warning(f"⚠️ Missing url parameter: {request.path_qs}")
            return web.Response(text="URL parameter is required", status=400)

        url = decode_target_url(url)

        try:
            upstream = await self.fetch_upstream(url)

            if not upstream.ok:
                logger.warning(f"⚠️ Upstream returned {upstream.status} for {url}")
                return web.Response(
                    text=f"Failed to fetch content: {upstream.reason}",
                    status=upstream.status
                )

            content_type = upstream.content_type or DEFAULT_CONTENT_TYPE
            body = upstream.body

            if ContentRewriter.is_rewritable(content_type):
                rewriter = ContentRewriter(url, endpoint=self.endpoint)
                text = decode_text(body, upstream.charset)
                body = rewriter.rewrite(text, content_type).encode('utf-8')
                content_type = utf8_content_type(content_type)

            self.stats['total_responses'] += 1
            return web.Response(body=body, headers=self._build_headers(content_type))

        except Exception as e:
            self.stats['errors'] += 1
            logger.error(f"❌ Error proxying content from {url}: {e}", exc_info=True)
            return web.Response(text="Failed to proxy content", status=500)

    def _build_headers(self, content_type: str) -> dict:
        """
        Заголовки ответа строятся с нуля: заголовки upstream (в том числе
        Content-Security-Policy и X-Frame-Options) не копируются
        """
        return {
            'Content-Type': content_type,
            'Access-Control-Allow-Origin': '*',
        }

    async def handle_health(self, request):
        """Состояние прокси для мониторинга"""
        return web.json_response({
            'status': 'healthy',
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'stats': self.get_full_stats()
        })

    def get_full_stats(self):
        """Получить полную статистику прокси"""
        return {
            'requests': self.stats['total_requests'],
            'responses': self.stats['total_responses'],
            'errors': self.stats['errors']
        }


def build_app(proxy: ReaderProxy) -> web.Application:
    """Создает aiohttp приложение с маршрутами прокси"""
    app = web.Application()
    app.router.add_get(proxy.endpoint, proxy.handle_proxy)
    app.router.add_get('/health', proxy.handle_health)

    async def on_cleanup(app):
        await proxy.cleanup()

    app.on_cleanup.append(on_cleanup)
    return app


class ProxyManager:
    # Секунды на корректную остановку сервера и потока
    SHUTDOWN_TIMEOUT = 5

    def __init__(self, config=None):
        self.config = config or get_config()
        self.is_running = False
        self.proxy = None
        self.runner = None
        self.site = None
        self.loop = None
        self.thread = None

        proxy_config = self.config.get_proxy_config()
        self.host = proxy_config.get('host', '127.0.0.1')
        self.local_port = proxy_config.get('local_port', 61000)
        self.endpoint = proxy_config.get('endpoint', '/proxy')
        self.ssl_enabled = proxy_config.get('ssl_enabled', False)

        # Error tracking
        self.last_error_type = None  # 'port', 'ssl', 'server', 'unknown'
        self.last_error_details = None

    @property
    def base_url(self):
        scheme = 'https' if self.ssl_enabled else 'http'
        return f"{scheme}://{self.host}:{self.local_port}"

    def start(self):
        """
        Запуск прокси сервера в отдельном потоке

        Returns:
            bool: True если успешно запущен
        """
        if self.is_running:
            logger.warning("⚠️ Прокси уже запущен")
            return False

        self.last_error_type = None
        self.last_error_details = None

        port_available, port_message = check_port_availability(self.local_port, self.host)
        if not port_available:
            logger.error(f"❌ {port_message}")

            process_info = get_process_using_port(self.local_port)
            if process_info:
                logger.info(
                    f"📌 Процесс на порту {self.local_port}:\n"
                    f"   PID: {process_info.get('pid')}\n"
                    f"   Name: {process_info.get('name')}\n"
                    f"   User: {process_info.get('username', 'N/A')}"
                )

            self.last_error_type = 'port'
            self.last_error_details = port_message
            return False

        try:
            self.thread = threading.Thread(
                target=self._run_server,
                daemon=True
            )
            self.thread.start()

            # Ждём запуска (максимум 5 секунд)
            for _ in range(50):
                if self.is_running or self.last_error_type:
                    break
                time.sleep(0.1)

            if not self.is_running:
                logger.error("❌ Прокси не запустился за отведенное время")
                self.last_error_type = self.last_error_type or 'server'
                self.stop()
                return False

            logger.info(f"✅ Proxy server started on {self.base_url}{self.endpoint}")
            return True

        except Exception as e:
            logger.error(f"❌ Failed to start proxy: {e}")
            self.last_error_type = 'unknown'
            self.last_error_details = str(e)
            self.stop()
            return False

    def _run_server(self):
        """Запускает сервер в отдельном event loop"""
        try:
            self.loop = asyncio.new_event_loop()
            asyncio.set_event_loop(self.loop)

            self.loop.run_until_complete(self._start_server())
            if self.is_running:
                self.loop.run_forever()

        except Exception as e:
            logger.error(f"❌ Ошибка в event loop: {e}")
            self.is_running = False
        finally:
            if self.loop:
                self._cancel_pending_tasks()
                self.loop.close()

    def _cancel_pending_tasks(self):
        """Отменяет незавершенные задачи loop (обработчики, ждущие upstream без таймаута)"""
        try:
            pending = asyncio.all_tasks(self.loop)
            if pending:
                logger.warning(f"⚠️ Cancelling {len(pending)} pending task(s)")
                for task in pending:
                    task.cancel()
                self.loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))

            if self.proxy:
                self.loop.run_until_complete(self.proxy.cleanup())
        except Exception as e:
            logger.error(f"❌ Ошибка при отмене задач: {e}")

    def _create_ssl_context(self):
        """SSL контекст с самоподписанным сертификатом"""
        from core.certificate_manager import CertificateManager

        certificate_manager = CertificateManager()
        if not certificate_manager.ensure_certificates_exist():
            raise RuntimeError("Не удалось создать SSL сертификаты")

        ssl_context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        ssl_context.load_cert_chain(
            certfile=str(certificate_manager.cert_path),
            keyfile=str(certificate_manager.key_path)
        )
        return ssl_context

    async def _start_server(self):
        """Асинхронный запуск сервера"""
        try:
            ssl_context = None
            if self.ssl_enabled:
                try:
                    ssl_context = self._create_ssl_context()
                except Exception as e:
                    self.last_error_type = 'ssl'
                    self.last_error_details = str(e)
                    raise

            proxy_config = self.config.get_proxy_config()
            self.proxy = ReaderProxy(
                endpoint=self.endpoint,
                fetch_timeout=proxy_config.get('fetch_timeout')
            )
            await self.proxy.initialize()

            app = build_app(self.proxy)

            self.runner = web.AppRunner(app, access_log=None)
            await self.runner.setup()

            self.site = web.TCPSite(
                self.runner,
                host=self.host,
                port=self.local_port,
                ssl_context=ssl_context,
            )

            await self.site.start()
            self.is_running = True
            logger.info(f"✅ Сервер успешно запущен на порту {self.local_port}")

        except Exception as e:
            logger.error(f"❌ Ошибка запуска сервера: {e}")
            self.last_error_type = self.last_error_type or 'server'
            self.last_error_details = self.last_error_details or str(e)
            self.is_running = False

    def stop(self):
        """Остановка прокси сервера"""
        try:
            logger.info("🛑 Stopping proxy...")

            self.is_running = False

            if self.loop and self.loop.is_running():
                future = asyncio.run_coroutine_threadsafe(self._stop_server(), self.loop)
                try:
                    future.result(timeout=self.SHUTDOWN_TIMEOUT)
                except concurrent.futures.TimeoutError:
                    # Обработчики, ждущие upstream, отменяются в _cancel_pending_tasks
                    logger.warning("⚠️ Graceful shutdown timed out, cancelling in-flight requests")

        except Exception as e:
            logger.error(f"❌ Error stopping proxy: {e}")
            logger.exception("Full traceback:")

        finally:
            if self.loop and self.loop.is_running():
                try:
                    self.loop.call_soon_threadsafe(self.loop.stop)
                except RuntimeError:
                    # loop уже закрыт потоком сервера
                    pass

            if self.thread and self.thread.is_alive():
                self.thread.join(timeout=self.SHUTDOWN_TIMEOUT)
                if self.thread.is_alive():
                    logger.error("❌ Server thread did not exit")

        if self.proxy:
            stats = self.proxy.get_full_stats()
            logger.info(
                f"📊 Session statistics:\n"
                f"   Total requests: {stats.get('requests', 0)}\n"
                f"   Total responses: {stats.get('responses', 0)}\n"
                f"   Errors: {stats.get('errors', 0)}"
            )

        logger.info("✅ Proxy stopped")

    async def _stop_server(self):
        """Асинхронная остановка сервера"""
        try:
            if self.site:
                await self.site.stop()
            if self.runner:
                await self.runner.cleanup()
            if self.proxy:
                await self.proxy.cleanup()
            logger.debug("✅ Сервер успешно остановлен")
        except Exception as e:
            logger.error(f"❌ Ошибка при остановке сервера: {e}")

    def get_status(self):
        """Возвращает статус прокси"""
        status = {
            'running': self.is_running,
            'host': self.host,
            'port': self.local_port,
            'endpoint': self.endpoint,
            'url': f"{self.base_url}{self.endpoint}",
        }

        if self.last_error_type:
            status['error_type'] = self.last_error_type
            status['error_details'] = self.last_error_details

        if self.proxy and self.is_running:
            status['proxy_stats'] = self.proxy.get_full_stats()

        return status


# Синглтон для глобального доступа
_proxy_manager = None


def get_proxy_manager() -> ProxyManager:
    """Возвращает глобальный экземпляр ProxyManager"""
    global _proxy_manager
    if _proxy_manager is None:
        _proxy_manager = ProxyManager()
    return _proxy_manager
