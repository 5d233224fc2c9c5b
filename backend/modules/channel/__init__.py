"""채널 모듈.

채널(주파수) presence 테이블을 제공합니다.

Classes:
    ChannelRegistry: 채널 및 참가자 관리
    Channel: 채널 레코드
    ChannelSummary: 스캔 결과 항목
"""

from .registry import ChannelRegistry, Channel, ChannelSummary

__all__ = [
    "ChannelRegistry",
    "Channel",
    "ChannelSummary",
]
