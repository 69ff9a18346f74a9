# core/proxy/__init__.py
"""
Proxy modules package.

Content rewriting and URL helpers used by the /proxy handler.
"""

from core.proxy.content_rewriter import ContentRewriter
from core.proxy.url_utils import build_proxy_url, decode_target_url, is_same_document

__all__ = ['ContentRewriter', 'build_proxy_url', 'decode_target_url', 'is_same_document']
