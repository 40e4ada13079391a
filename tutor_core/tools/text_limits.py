"""AR 卡片文本长度限制。"""

BOT_CARD_TEXT = 300
ELLIPSIS = "..."


def limit_text(text: str, max_length: int = BOT_CARD_TEXT, suffix: str = ELLIPSIS) -> str:
    """硬截断到 max_length（含后缀）。"""

    text = (text or "").strip()
    if len(text) <= max_length:
        return text
    if max_length <= len(suffix):
        return text[:max_length]
    return text[: max_length - len(suffix)].rstrip() + suffix


def truncate_at_word_boundary(text: str, max_length: int = BOT_CARD_TEXT, suffix: str = ELLIPSIS) -> str:
    """尽量在单词边界截断；找不到合适的空格时退化为硬截断。"""

    text = (text or "").strip()
    if len(text) <= max_length:
        return text
    budget = max_length - len(suffix)
    if budget <= 0:
        return text[:max_length]
    cut = text.rfind(" ", 0, budget + 1)
    # 边界太靠前时宁可硬截断，避免丢掉大半内容
    if cut < budget * 0.6:
        return limit_text(text, max_length, suffix)
    return text[:cut].rstrip(" ,;:") + suffix
