"""외부 협력자 인터페이스.

코어는 다음 외부 서비스를 인터페이스로만 사용합니다.

    - TelephonyGateway: 채널 키가 직접 다이얼 번호일 때 사용하는 외부 음성 게이트웨이
    - StationDirectory: 공유 음원 설명자를 채우기 위한 외부 방송국 검색

구현체는 이 저장소에 포함되지 않으며, 컨트롤러 생성 시 주입합니다.
"""

import re
from dataclasses import dataclass
from typing import Callable, List, Protocol

# "+" 다음에 숫자와 공백, 괄호, 하이픈만 허용 (E.164 표기 변형)
_DIAL_PATTERN = re.compile(r"\+[\d\s()-]*\d[\d\s()-]*")


def is_direct_dial(channel_key: str) -> bool:
    """채널 키가 메시(릴레이) 채널이 아닌 직접 다이얼 번호인지 판별합니다.

    "+"로 시작하고 숫자, 공백, 괄호, 하이픈만으로 이루어진 키만 전화번호로
    봅니다. 주파수("101.5")와 자유 텍스트 키는 길이와 상관없이 메시 채널입니다.

    Examples:
        >>> is_direct_dial("+821012345678")
        True
        >>> is_direct_dial("101.5")
        False
        >>> is_direct_dial("+1 (555) 010-9999")
        True
        >>> is_direct_dial("basement")
        False
    """
    return _DIAL_PATTERN.fullmatch(channel_key.strip()) is not None


class CallHandle(Protocol):
    """외부 게이트웨이가 반환하는 통화 핸들.

    이벤트: "accept", "disconnect", "error"
    """

    def on(self, event: str, callback: Callable[..., None]) -> None: ...

    def disconnect(self) -> None: ...


class TelephonyGateway(Protocol):
    async def dial(self, destination: str, caller_id: str) -> CallHandle: ...


@dataclass(frozen=True)
class StationResult:
    """방송국 검색 결과 항목."""
    name: str
    country_code: str
    bitrate: int
    resolved_url: str


class StationDirectory(Protocol):
    async def search(self, query: str) -> List[StationResult]: ...
