from __future__ import annotations

import os
import re
from typing import Optional


MAX_SESSION_NAME = 50


def session_name_from_prompt(prompt: Optional[str]) -> Optional[str]:
    words = (prompt or '').split()
    if not words:
        return None
    name = ' '.join(word[:1].upper() + word[1:] for word in words[:4])
    return name[:MAX_SESSION_NAME]


def safe_filename(filename: Optional[str], default: str = 'image') -> str:
    base = os.path.basename(filename or '').replace(' ', '_')
    base = re.sub(r'[^A-Za-z0-9_.-]', '', base)
    return base or default
