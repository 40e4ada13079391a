"""语言模型接入层：Provider 选择与回退、流式文本收敛、离线兜底。"""

from tutor_core.language.interface import LanguageInterface
from tutor_core.language.reconciler import ReconciledText, ReconcilePolicy, StreamAccumulator, reconcile

__all__ = ["LanguageInterface", "ReconciledText", "ReconcilePolicy", "StreamAccumulator", "reconcile"]
