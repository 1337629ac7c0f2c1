"""subconv：Shadowsocks 订阅 + profile → Clash / Surge / Shadowrocket / Quantumult X 配置。"""

__version__ = "1.0.0"
