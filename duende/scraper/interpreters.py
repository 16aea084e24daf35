"""
Page interpreters: turn fetched HTML into the plain text handed to the extractor.

Sites that need special handling register an interpreter for their domain; every
other page goes through the generic cleaner.
"""
from typing import Callable, Dict
from urllib.parse import urlparse

from selectolax.parser import HTMLParser

from duende.scraper.utils import norm_space

Interpreter = Callable[[str], str]

MAX_TEXT_CHARS = 15000
DROP_TAGS = ("script", "style", "noscript", "template", "svg", "iframe", "header", "footer", "nav", "aside")

_REGISTRY: Dict[str, Interpreter] = {}


def clean_html_text(html: str, limit_chars: int = MAX_TEXT_CHARS) -> str:
    doc = HTMLParser(html or "")
    root = doc.body or doc.root
    if root is None:
        return ""
    for sel in DROP_TAGS:
        for n in root.css(sel):
            n.decompose()
    return norm_space(root.text(separator=" "))[:limit_chars]


def register(domain: str):
    """Decorator: use the wrapped function for pages on domain and its subdomains."""
    def deco(fn: Interpreter) -> Interpreter:
        _REGISTRY[domain.lower().lstrip(".")] = fn
        return fn
    return deco


def unregister(domain: str):
    _REGISTRY.pop(domain.lower().lstrip("."), None)


def interpreter_for(url: str) -> Interpreter:
    host = (urlparse(url).hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    # most specific first: a.b.example.com, b.example.com, example.com
    parts = host.split(".")
    for i in range(len(parts) - 1):
        fn = _REGISTRY.get(".".join(parts[i:]))
        if fn:
            return fn
    return clean_html_text
