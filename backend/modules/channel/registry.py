"""채널(주파수) 기반 참가자 관리 모듈.

이 모듈은 채널과 참가자(presence) 상태를 관리합니다.
채널 키는 "101.5" 같은 주파수 문자열, 전화번호 형태의 문자열, 또는 임의의
텍스트일 수 있으며, 이 모듈은 키에 어떤 의미도 부여하지 않습니다.

주요 기능:
    - 채널 생성 및 삭제 (첫 입장 시 자동 생성/비어있을 때 자동 삭제)
    - 참가자 입장/퇴장 관리 (다른 채널 입장 시 이전 채널에서 자동 퇴장)
    - 채널별 참가자 목록 조회
    - 스캔용 활성 채널 목록 (참가자 수 내림차순, 채널 키 오름차순)

Architecture:
    - channels: Dict[str, Channel] - 채널 키 → 채널 레코드 (정방향 인덱스)
    - participant_to_channel: Dict[str, str] - 참가자 ID → 채널 키 (역방향 인덱스)

    두 인덱스는 join()/leave() 호출이 끝난 직후 항상 서로 일치합니다.
    멤버십 변경은 반드시 이 두 메서드를 통해서만 이루어집니다.

Classes:
    Channel: 채널 레코드 데이터 클래스
    ChannelSummary: 스캔 결과 항목
    ChannelRegistry: 채널 및 참가자 관리 클래스

Examples:
    기본 사용법:
        >>> registry = ChannelRegistry()
        >>> registry.join("peer-a", "101.5")
        ('101.5', 1)
        >>> registry.join("peer-b", "101.5")
        ('101.5', 2)
        >>> registry.leave("peer-b")
        '101.5'

See Also:
    modules/signaling/relay.py: 레지스트리를 사용하는 시그널링 릴레이
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)


@dataclass
class Channel:
    """채널 레코드.

    Attributes:
        channel_key (str): 채널 키
        members (Set[str]): 현재 참가자 ID 집합
        last_activity (float): 마지막 활동 시각 (epoch 초)
    """
    channel_key: str
    members: Set[str] = field(default_factory=set)
    last_activity: float = 0.0


@dataclass(frozen=True)
class ChannelSummary:
    """list_active()가 반환하는 채널 스냅샷 항목."""
    channel_key: str
    member_count: int
    last_activity: float

    def to_wire(self) -> dict:
        """와이어 형식 딕셔너리로 변환합니다 (lastActivity는 epoch 밀리초)."""
        return {
            "channelKey": self.channel_key,
            "memberCount": self.member_count,
            "lastActivity": int(self.last_activity * 1000),
        }


class ChannelRegistry:
    """채널과 참가자를 관리하는 핵심 클래스.

    I/O가 전혀 없는 순수 인메모리 presence 테이블입니다. 미디어나
    메시지에 대해서는 알지 못합니다. 프로세스당 하나의 인스턴스를 생성하고
    종료 시 clear()로 정리합니다.

    Attributes:
        channels (Dict[str, Channel]): 채널 키 → 채널 레코드
        participant_to_channel (Dict[str, str]): 참가자 ID → 채널 키 (빠른 조회용)

    Failure Semantics:
        - "찾을 수 없음"으로 예외를 발생시키는 연산은 없음
        - 부재는 빈 결과 또는 None으로 표현됨

    Thread Safety:
        - asyncio 환경에서 단일 스레드로 동작 (모든 연산이 동기 함수)
        - 멀티 스레드 환경에서는 추가 동기화 필요
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        """ChannelRegistry 초기화.

        Args:
            clock: 활동 시각 기록에 사용할 시계 함수 (테스트에서 교체 가능)
        """
        self._clock = clock

        # channel_key -> Channel
        self.channels: Dict[str, Channel] = {}

        # participant_id -> channel_key (for quick lookup)
        self.participant_to_channel: Dict[str, str] = {}

    def join(self, participant: str, channel_key: str) -> Tuple[str, int]:
        """참가자를 지정된 채널에 추가합니다.

        참가자가 이미 다른(또는 같은) 채널에 속해 있으면 먼저 leave()를
        수행합니다. 채널이 없으면 생성하고, 활동 시각을 갱신합니다.

        Args:
            participant (str): 참가자 ID
            channel_key (str): 입장할 채널 키

        Returns:
            Tuple[str, int]: (채널 키, 입장 후 참가자 수)

        Examples:
            >>> registry = ChannelRegistry()
            >>> registry.join("peer-a", "101.5")
            ('101.5', 1)
            >>> registry.join("peer-a", "88.1")  # 101.5에서 자동 퇴장
            ('88.1', 1)
        """
        self.leave(participant)

        channel = self.channels.get(channel_key)
        if channel is None:
            channel = Channel(channel_key=channel_key)
            self.channels[channel_key] = channel
            logger.info(f"Channel '{channel_key}' created")

        channel.members.add(participant)
        channel.last_activity = self._clock()
        self.participant_to_channel[participant] = channel_key

        member_count = len(channel.members)
        logger.info(f"Participant {participant[:8]} joined channel '{channel_key}'. "
                    f"Channel has {member_count} members")
        return channel_key, member_count

    def leave(self, participant: str) -> Optional[str]:
        """참가자를 현재 속한 채널에서 제거합니다.

        채널이 비게 되면 채널 레코드를 삭제합니다.

        Args:
            participant (str): 퇴장할 참가자 ID

        Returns:
            Optional[str]: 퇴장한 채널 키. 어떤 채널에도 속하지 않았으면 None
        """
        channel_key = self.participant_to_channel.pop(participant, None)
        if channel_key is None:
            return None

        channel = self.channels.get(channel_key)
        if channel is not None:
            channel.members.discard(participant)
            if not channel.members:
                del self.channels[channel_key]
                logger.info(f"Channel '{channel_key}' deleted (empty)")
            else:
                logger.info(f"Participant {participant[:8]} left channel '{channel_key}'. "
                            f"Channel has {len(channel.members)} members")

        return channel_key

    def members_of(self, channel_key: str) -> Set[str]:
        """채널의 현재 참가자 집합을 반환합니다 (복사본).

        채널이 없으면 빈 집합을 반환합니다.
        """
        channel = self.channels.get(channel_key)
        return set(channel.members) if channel else set()

    def list_active(self) -> List[ChannelSummary]:
        """비어있지 않은 모든 채널의 스냅샷을 반환합니다.

        스캔/탐색 UI용으로 참가자 수 내림차순, 같은 수일 때는 채널 키
        오름차순으로 정렬합니다.

        Returns:
            List[ChannelSummary]: 정렬된 채널 요약 리스트

        Examples:
            >>> registry = ChannelRegistry()
            >>> registry.join("a", "88.1")
            ('88.1', 1)
            >>> registry.join("b", "101.5")
            ('101.5', 1)
            >>> registry.join("c", "101.5")
            ('101.5', 2)
            >>> [s.channel_key for s in registry.list_active()]
            ['101.5', '88.1']
        """
        summaries = [
            ChannelSummary(
                channel_key=channel.channel_key,
                member_count=len(channel.members),
                last_activity=channel.last_activity,
            )
            for channel in self.channels.values()
            if channel.members
        ]
        summaries.sort(key=lambda s: (-s.member_count, s.channel_key))
        return summaries

    def touch(self, channel_key: str) -> None:
        """채널이 존재하면 마지막 활동 시각을 갱신합니다."""
        channel = self.channels.get(channel_key)
        if channel is not None:
            channel.last_activity = self._clock()

    def channel_of(self, participant: str) -> Optional[str]:
        """참가자가 속한 채널 키를 반환합니다. 없으면 None."""
        return self.participant_to_channel.get(participant)

    def member_count(self, channel_key: str) -> int:
        """채널의 현재 참가자 수. 채널이 없으면 0."""
        channel = self.channels.get(channel_key)
        return len(channel.members) if channel else 0

    def stats(self) -> Dict[str, int]:
        """헬스체크용 통계."""
        return {
            "channels": len(self.channels),
            "participants": len(self.participant_to_channel),
        }

    def clear(self) -> None:
        """모든 채널과 참가자 정보를 제거합니다 (서버 종료 시)."""
        count = len(self.channels)
        self.channels.clear()
        self.participant_to_channel.clear()
        logger.info(f"Channel registry cleared ({count} channels)")
