"""
OpsHostGuard 主机生命周期编排引擎。

唤醒、就绪探测、补丁更新与关机确认，面向 Windows 教室/实验室机群。
"""
__version__ = "2.0.0"
