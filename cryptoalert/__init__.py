"""
CryptoAlert - 暗号資産価格アラート監視サービス
"""

__version__ = "0.1.0"
