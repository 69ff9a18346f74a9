# core/proxy/content_rewriter.py
"""Модуль для перезаписи URL в контенте"""

import re
import logging
from urllib.parse import urljoin

from core.proxy.url_utils import (
    build_proxy_url,
    get_base_path,
    get_origin,
    is_same_document,
    split_fragment,
)

logger = logging.getLogger(__name__)


class ContentRewriter:
    """Класс для перезаписи URL в HTML/CSS контенте через прокси"""

    # Предкомпилированные регулярные выражения
    _HTML_ATTR_PATTERN = re.compile(r'((?:src|href)\s*=\s*["\'])([^"\']+)(["\'])', re.IGNORECASE)
    _CSS_IMPORT_PATTERN = re.compile(r'@import\s+["\']([^"\']+)["\']', re.IGNORECASE)
    _CSS_URL_PATTERN = re.compile(r'url\(["\']?([^"\')]+)["\']?\)', re.IGNORECASE)

    # Ссылки, которые никогда не проксируются
    _PASSTHROUGH_PREFIXES = ('data:', 'javascript:', 'mailto:', '#')

    # Сколько перезаписей логировать подробно
    _LOGGED_REWRITES = 3

    def __init__(self, target_url: str, endpoint: str = '/proxy'):
        """
        Инициализация ContentRewriter

        Args:
            target_url: Полностью декодированный URL текущего документа
            endpoint: Путь эндпоинта прокси (например, /proxy)
        """
        self.target_url = target_url
        self.endpoint = endpoint
        self.origin = get_origin(target_url)
        self.base_path = get_base_path(target_url)

        logger.debug(f"ContentRewriter: {target_url} (base: {self.base_path})")

    @staticmethod
    def is_html(content_type: str) -> bool:
        return 'text/html' in content_type.lower()

    @staticmethod
    def is_css(content_type: str) -> bool:
        return 'css' in content_type.lower()

    @classmethod
    def is_rewritable(cls, content_type: str) -> bool:
        """Нужно ли перезаписывать контент данного типа"""
        return cls.is_html(content_type) or cls.is_css(content_type)

    def rewrite(self, content: str, content_type: str) -> str:
        """
        Перезаписывает URL в контенте

        Args:
            content: Контент для обработки
            content_type: MIME type контента

        Returns:
            str: Обработанный контент с перезаписанными URL
        """
        if self.is_html(content_type):
            return self._rewrite_html(content)
        if self.is_css(content_type):
            return self._rewrite_css(content)
        return content

    def rewrite_url(self, url_path: str) -> str:
        """
        Перезаписывает одну ссылку из HTML/CSS

        Args:
            url_path: Значение атрибута или аргумент url()/@import

        Returns:
            str: Ссылка через прокси, только якорь или исходное значение
        """
        if url_path.startswith(self._PASSTHROUGH_PREFIXES):
            return url_path

        # Уже проксировано
        if f"{self.endpoint}?url=" in url_path:
            return url_path

        path, fragment = split_fragment(url_path)

        if path.startswith(('http://', 'https://')):
            full_url = path
        elif path.startswith('//'):
            full_url = 'https:' + path
        elif path.startswith('/'):
            full_url = self.origin + path
        else:
            full_url = urljoin(self.base_path, path)

        if fragment and is_same_document(self.target_url, full_url):
            logger.debug(f"Same document detected: {url_path} -> {fragment} (current: {self.target_url})")
            return fragment

        return build_proxy_url(self.endpoint, full_url, fragment)

    def _rewrite_html(self, content: str) -> str:
        """
        Перезаписывает атрибуты src и href в HTML контенте

        Args:
            content: HTML контент

        Returns:
            str: Обработанный HTML
        """
        logger.info(f"Processing HTML from: {self.target_url}")
        rewrite_count = 0

        def replace(match):
            nonlocal rewrite_count
            prefix, url_path, suffix = match.groups()
            rewritten = f"{prefix}{self.rewrite_url(url_path)}{suffix}"
            if rewritten != match.group(0):
                rewrite_count += 1
                if rewrite_count <= self._LOGGED_REWRITES:
                    logger.debug(f"Rewrote: {match.group(0)} -> {rewritten}")
            return rewritten

        content = self._HTML_ATTR_PATTERN.sub(replace, content)
        logger.info(f"📊 Total rewrites: {rewrite_count}")
        return content

    def _rewrite_css(self, content: str) -> str:
        """
        Перезаписывает @import и url() в CSS контенте

        Args:
            content: CSS контент

        Returns:
            str: Обработанный CSS
        """
        logger.info(f"Processing CSS from: {self.target_url}")

        content = self._CSS_IMPORT_PATTERN.sub(
            lambda m: f'@import "{self.rewrite_url(m.group(1))}"',
            content
        )
        content = self._CSS_URL_PATTERN.sub(
            lambda m: f'url("{self.rewrite_url(m.group(1))}")',
            content
        )
        return content
