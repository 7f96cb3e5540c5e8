from __future__ import annotations

import base64

# 1×1 transparent GIF (hardcoded, valid)
_TRANSPARENT_1X1_GIF = base64.b64decode(b"R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7")


def transparent_pixel_gif() -> bytes:
    return _TRANSPARENT_1X1_GIF
