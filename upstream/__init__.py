"""upstream - 免 root 的多来源发布包管理器"""

__version__ = "0.4.0"
