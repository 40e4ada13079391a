"""提示词模板加载工具。

按语言(locale) 从 prompts/<locale> 目录读取 markdown 模板，
再用 str.format 填充占位符（模板中的字面花括号需写成双花括号）。
"""

from functools import lru_cache
from pathlib import Path


PROMPTS_DIR = Path(__file__).resolve().parent


@lru_cache(maxsize=None)
def _read_template(name: str, locale: str) -> str:
    return (PROMPTS_DIR / locale / f"{name}.md").read_text(encoding="utf-8")


def load_prompt(name: str, locale: str = "en", **values) -> str:
    """加载名为 name 的模板并填充 values。"""

    template = _read_template(name, locale)
    return template.format(**values) if values else template
