"""
Post-processing hooks applied to JSON response bodies
"""

import re
from typing import Any, Callable, Optional

ResponseTransform = Callable[[Any], Any]

IMAGE_URL_KEY = re.compile(r"image_url", re.IGNORECASE)

class ImageUrlRewriter:
    """
    Point storage URLs at the image proxy

    Only string values stored under keys containing "image_url" (any case)
    are rewritten; the first occurrence of the storage origin is replaced.
    Lists and nested objects are walked recursively.
    """

    def __init__(self, source_prefix: str, proxy_prefix: str):
        self.source_prefix = source_prefix
        self.proxy_prefix = proxy_prefix

    def __call__(self, data: Any) -> Any:
        if isinstance(data, list):
            return [self(item) for item in data]
        if isinstance(data, dict):
            rewritten = {}
            for key, value in data.items():
                if isinstance(value, str) and IMAGE_URL_KEY.search(str(key)):
                    rewritten[key] = value.replace(self.source_prefix, self.proxy_prefix, 1)
                else:
                    rewritten[key] = self(value)
            return rewritten
        return data

def build_response_transform(storage_public_url: str, image_proxy_url: str) -> Optional[ResponseTransform]:
    """Image URL rewriter when both origins are configured, else None"""
    if storage_public_url and image_proxy_url:
        return ImageUrlRewriter(storage_public_url, image_proxy_url)
    return None
