# core/proxy/url_utils.py
"""Вспомогательные функции для работы с URL в прокси"""

import re
import logging
from typing import Tuple
from urllib.parse import quote, unquote, urlsplit

logger = logging.getLogger(__name__)

# Расширения, по которым URL считается файлом (а не директорией)
_FILE_EXTENSION_PATTERN = re.compile(
    r'\.(html?|css|js|json|xml|txt|pdf|png|jpg|jpeg|gif|svg|woff2?|ttf|eot)$',
    re.IGNORECASE
)

# Некорректная %-последовательность (например "%zz" или "%" в конце строки)
_MALFORMED_ESCAPE_PATTERN = re.compile(r'%(?![0-9A-Fa-f]{2})')

# Версионный суффикс в конце пути: .../2301.00001v2
_VERSION_SUFFIX_PATTERN = re.compile(r'v\d+$')

# Символы, которые encodeURIComponent оставляет как есть
_COMPONENT_SAFE_CHARS = "-_.!~*'()"


def decode_target_url(url: str) -> str:
    """
    Декодирует URL до стабильного состояния (двойное, тройное кодирование)

    Args:
        url: URL из query-параметра

    Returns:
        str: Последнее успешно декодированное значение
    """
    previous = None
    passes = 0

    while url != previous and '%' in url:
        previous = url
        if _MALFORMED_ESCAPE_PATTERN.search(url):
            logger.debug(f"Malformed escape in {url[:80]}, decoding stopped")
            break
        try:
            url = unquote(url, errors='strict')
        except UnicodeDecodeError:
            logger.debug(f"Invalid UTF-8 in {url[:80]}, decoding stopped")
            break
        passes += 1

    if passes > 1:
        logger.debug(f"Target URL decoded in {passes} passes: {url}")

    return url


def encode_component(value: str) -> str:
    """Кодирует значение так же, как encodeURIComponent в браузере"""
    return quote(value, safe=_COMPONENT_SAFE_CHARS)


def build_proxy_url(endpoint: str, target_url: str, fragment: str = '') -> str:
    """
    Формирует URL, идущий через прокси

    Args:
        endpoint: Путь эндпоинта прокси (например, /proxy)
        target_url: Абсолютный URL ресурса
        fragment: Якорь (с '#'), добавляется вне кодирования

    Returns:
        str: /proxy?url=<encoded>#fragment
    """
    return f"{endpoint}?url={encode_component(target_url)}{fragment}"


def has_file_extension(url: str) -> bool:
    """Проверяет, заканчивается ли путь URL известным расширением файла"""
    path = urlsplit(url).path
    last_segment = path[path.rfind('/') + 1:]
    return bool(_FILE_EXTENSION_PATTERN.search(last_segment))


def get_origin(url: str) -> str:
    """Возвращает origin (scheme://host[:port]) URL"""
    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        raise ValueError(f"Not an absolute URL: {url}")
    return f"{parts.scheme}://{parts.netloc}"


def get_base_path(url: str) -> str:
    """
    Вычисляет базовый путь для разрешения относительных ссылок

    Для "файловых" URL (page.html) база - родительская директория,
    для остальных - сам URL с завершающим слешем.

    Args:
        url: URL текущего документа

    Returns:
        str: Базовый путь, всегда заканчивается на '/'
    """
    path = urlsplit(url).path or '/'
    origin = get_origin(url)

    if has_file_extension(url):
        return origin + path[:path.rfind('/') + 1]

    return origin + (path if path.endswith('/') else path + '/')


def split_fragment(reference: str) -> Tuple[str, str]:
    """Отделяет якорь: 'page.html#sec' -> ('page.html', '#sec')"""
    path, sep, fragment = reference.partition('#')
    return path, sep + fragment


def _strip_document(url: str) -> str:
    """URL документа без якоря, query и завершающего слеша"""
    url = url.split('#', 1)[0].split('?', 1)[0]
    return url[:-1] if url.endswith('/') else url


def _strip_version(url: str) -> str:
    url = _VERSION_SUFFIX_PATTERN.sub('', url)
    return url[:-1] if url.endswith('/') else url


def is_same_document(current_url: str, target_url: str) -> bool:
    """
    Проверяет, указывает ли target_url на текущий документ

    Эвристика: сравнение без якоря, query, завершающего слеша и
    версионного суффикса vN (arXiv: 2301.00001v2 == 2301.00001).

    Args:
        current_url: URL текущего документа
        target_url: Разрешенный URL ссылки

    Returns:
        bool: True если это тот же документ
    """
    current_doc = _strip_document(current_url)
    target_doc = _strip_document(target_url)

    current_normalized = _strip_version(current_doc)
    target_normalized = _strip_version(target_doc)

    return (
        current_normalized == target_normalized or
        current_doc == target_doc or
        current_normalized == target_doc or
        target_normalized == current_doc
    )
