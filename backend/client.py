"""헤드리스 채널 클라이언트.

브라우저 없이 채널에 입장해 원격 참가자들과 메시 연결을 맺는 CLI입니다.
표준 입력의 각 줄은 채팅 메시지로 보내며, 슬래시 명령으로 PTT/비디오를
조작합니다.

Usage:
    python client.py ws://localhost:8000/ws 101.5
    python client.py ws://localhost:8000/ws 101.5 --video
    python client.py ws://localhost:8000/ws lobby --receive-only

Commands:
    /tx on|off      송신(PTT) 시작/중지
    /video on|off   비디오 켜기/끄기
    /scan           활성 채널 목록
    /leave          채널 퇴장 후 종료
"""
import argparse
import asyncio
import logging
import sys

from aiortc.contrib.media import MediaBlackhole

from modules.session import (
    ChannelSessionController,
    LocalMedia,
    MediaCapture,
    RelayClient,
    RelayUnavailable,
)

logger = logging.getLogger("client")


class ReceiveOnlyCapture(MediaCapture):
    """장치를 열지 않는 캡처 (수신 전용 참가)."""

    async def acquire(self, video: bool = False) -> LocalMedia:
        return LocalMedia.receive_only()


async def handle_command(controller: ChannelSessionController, line: str) -> bool:
    """입력 한 줄을 처리합니다. 종료해야 하면 False를 반환합니다."""
    if not line.startswith("/"):
        await controller.send_message(line)
        return True

    command, _, arg = line.partition(" ")
    arg = arg.strip().lower()

    if command == "/tx":
        await controller.set_transmitting(arg == "on")
    elif command == "/video":
        await controller.set_video(arg == "on")
    elif command == "/scan":
        for channel in await controller.scan():
            print(f"  {channel['channelKey']:>12}  {channel['memberCount']}명")
    elif command == "/leave":
        await controller.leave()
        return False
    else:
        print(f"알 수 없는 명령: {command}")
    return True


async def run(url: str, channel_key: str, video: bool, receive_only: bool):
    relay = RelayClient(url)
    blackhole = MediaBlackhole()

    async def on_remote_track(remote_id: str, track):
        # 원격 미디어를 소비해야 수신 통계와 연결이 유지됨
        blackhole.addTrack(track)
        await blackhole.start()

    controller = ChannelSessionController(
        relay,
        ReceiveOnlyCapture() if receive_only else MediaCapture(),
        on_notice=lambda notice: print(f"* {notice.text}"),
        on_message=lambda message: print(f"<{message['sender'][:8]}> {message['text']}"),
        on_remote_track=on_remote_track,
    )
    relay.on_event = controller.handle_event
    relay.on_reset = controller.on_transport_reset

    runner = asyncio.create_task(relay.run())
    ready = asyncio.create_task(relay.wait_ready())
    await asyncio.wait({runner, ready}, return_when=asyncio.FIRST_COMPLETED)
    if runner.done():
        ready.cancel()
        runner.result()

    await controller.start(channel_key, video=video)

    loop = asyncio.get_running_loop()
    try:
        while not runner.done():
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            if not await handle_command(controller, line.strip()):
                break
    finally:
        if controller.channel_key is not None:
            await controller.leave()
        await controller.drain()
        await blackhole.stop()
        await relay.close()
        if runner.done() and not runner.cancelled():
            runner.result()
        else:
            runner.cancel()


def main():
    p = argparse.ArgumentParser(description="Cerebro headless channel client")
    p.add_argument("url", help="Relay WebSocket URL (e.g. ws://localhost:8000/ws)")
    p.add_argument("channel", help="Channel key (frequency such as 101.5, or free text)")
    p.add_argument("--video", action="store_true", help="Capture video as well as audio")
    p.add_argument("--receive-only", action="store_true", help="Join without opening capture devices")
    p.add_argument("--log-level", default="INFO")
    args = p.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    try:
        asyncio.run(run(args.url, args.channel, args.video, args.receive_only))
    except RelayUnavailable as e:
        logger.error(f"릴레이에 연결할 수 없음: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
