"""
計時服務：由 Session 欄位推導出 TimerSnapshot 與下一個自然轉換

純計算邏輯，不涉及狀態轉換、不碰資料庫。

Session 的時間軸：
    focusing(rep 1) -> [break] -> focusing(rep 2) -> ... -> focusing(rep N) -> cooldown -> completed

每個計時階段都從 phase_started_at 開始算：
- focusing：max_duration 分鐘
- break：break_duration 分鐘
- cooldown：Settings.cooldown_minutes 分鐘

休息規則：第 k 個 repetition 結束後，若 k % break_interval == 0 且 k < repetitions 才休息；
不整除時，最後幾個 repetition 直接連續進行，最後一個結束後進入 cooldown。
"""
import math
from datetime import datetime, timedelta, timezone
from typing import Optional

from enums import SessionStatus
from schemas import TimerSnapshot


def now_ms() -> int:
    """目前時間（epoch 毫秒），用於事件 timestamp 與 serverTimestamp"""
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def to_epoch_ms(moment: datetime) -> int:
    """naive UTC datetime -> epoch 毫秒"""
    return int(moment.replace(tzinfo=timezone.utc).timestamp() * 1000)


def phase_duration_minutes(session, cooldown_minutes: int) -> int:
    """
    取得目前階段的目標長度（分鐘）

    waiting / warmup 還沒開始計時，回報 focus 長度
    """
    if session.status == SessionStatus.BREAK:
        return session.break_duration
    if session.status == SessionStatus.COOLDOWN:
        return cooldown_minutes
    return session.max_duration


def phase_ends_at(session, cooldown_minutes: int) -> Optional[datetime]:
    """目前計時階段的結束時間；沒有在計時就回傳 None"""
    if session.phase_started_at is None:
        return None
    if session.status not in (SessionStatus.FOCUSING, SessionStatus.BREAK, SessionStatus.COOLDOWN):
        return None
    minutes = phase_duration_minutes(session, cooldown_minutes)
    return session.phase_started_at + timedelta(minutes=minutes)


def build_timer_snapshot(session, now: datetime, cooldown_minutes: int):
    """
    計算 Session 在 now 這個時間點的 TimerSnapshot

    remaining 以 ceil 計算並夾在 [0, target * 60]：
    remaining == 0 恰好代表這個階段已經到期，下一次 sweep 一定會推進

    範例：
        focusing，max_duration=30，已過 10 分 0.5 秒
        -> remaining=1200, elapsed=600
    """
    target_minutes = phase_duration_minutes(session, cooldown_minutes)
    total_seconds = target_minutes * 60
    ends_at = phase_ends_at(session, cooldown_minutes)

    if ends_at is None:
        remaining = total_seconds if not _is_finished(session) else 0
    else:
        remaining = math.ceil((ends_at - now).total_seconds())
    remaining = max(0, min(total_seconds, remaining))

    return TimerSnapshot(
        remaining_seconds=remaining,
        elapsed_seconds=total_seconds - remaining,
        target_duration_minutes=target_minutes,
        server_timestamp=to_epoch_ms(now),
        current_repetition=session.current_repetition,
        repetitions=session.repetitions,
    )


def _is_finished(session) -> bool:
    return session.status in (SessionStatus.COMPLETED, SessionStatus.CANCELLED)


def is_phase_elapsed(session, now: datetime, cooldown_minutes: int) -> bool:
    ends_at = phase_ends_at(session, cooldown_minutes)
    return ends_at is not None and now >= ends_at


def is_break_due(completed_repetition: int, repetitions: int, break_interval: int) -> bool:
    """
    檢查剛完成的 repetition 之後是否要休息

    範例：
        is_break_due(1, 2, 1) -> True
        is_break_due(2, 2, 1) -> False（最後一輪，直接 cooldown）
        is_break_due(1, 3, 2) -> False
        is_break_due(2, 3, 2) -> True
    """
    if completed_repetition >= repetitions:
        return False
    return completed_repetition % max(1, break_interval) == 0


def status_after_focus(completed_repetition: int, repetitions: int, break_interval: int) -> SessionStatus:
    """focus 階段結束後的下一個狀態（FOCUSING 代表直接進下一輪、不休息）"""
    if completed_repetition >= repetitions:
        return SessionStatus.COOLDOWN
    if is_break_due(completed_repetition, repetitions, break_interval):
        return SessionStatus.BREAK
    return SessionStatus.FOCUSING
