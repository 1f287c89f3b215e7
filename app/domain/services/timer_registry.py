"""
Timer Registry - טיימרים בזיכרון לדיאלוגי בחירת מחלקה, לפי מספר מגע.

לכל דיאלוג: reminder, final ו-settle (המתנה לפני הודעת פתיחה).
כל סט טיימרים מקבל generation ממונה גלובלי עולה. טיימר שומר את ה-generation
בזמן התזמון ובודק כשהוא יורה שהסט הרשום למגע עדיין נושא אותו, כך שטיימר
ישן לא פועל על דיאלוג חדש של אותו מספר. הסרת סט לא משאירה דבר ב-registry.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Optional

TIMER_KINDS = ("reminder", "final", "settle")


@dataclass
class PendingTimerSet:
    """Scheduled callbacks of one pending-selection dialogue"""

    contact_number: str
    record_id: int
    generation: int
    tasks: dict[str, asyncio.Task] = field(default_factory=dict)

    def active_kinds(self) -> list[str]:
        return [kind for kind, task in self.tasks.items() if not task.done()]


class TimerRegistry:
    """contact number → PendingTimerSet"""

    def __init__(self) -> None:
        self._timers: dict[str, PendingTimerSet] = {}
        self._last_generation = 0

    # ── generation ──

    def next_generation(self) -> int:
        self._last_generation += 1
        return self._last_generation

    def current_generation(self, contact_number: str) -> Optional[int]:
        timer_set = self._timers.get(contact_number)
        return timer_set.generation if timer_set is not None else None

    def bump_generation(self, contact_number: str) -> Optional[int]:
        """טיימרים שכבר תוזמנו למגע הופכים ישנים; הסט עצמו נשאר רשום"""
        timer_set = self._timers.get(contact_number)
        if timer_set is None:
            return None
        timer_set.generation = self.next_generation()
        return timer_set.generation

    def is_current(self, contact_number: str, generation: int) -> bool:
        return self.current_generation(contact_number) == generation

    # ── get/set/remove/list ──

    def get(self, contact_number: str) -> Optional[PendingTimerSet]:
        return self._timers.get(contact_number)

    def set(self, timer_set: PendingTimerSet) -> None:
        """רישום סט טיימרים; סט קודם לאותו מספר מבוטל"""
        previous = self._timers.get(timer_set.contact_number)
        if previous is not None and previous is not timer_set:
            self._cancel_tasks(previous)
        self._timers[timer_set.contact_number] = timer_set

    def add_task(self, contact_number: str, kind: str, task: asyncio.Task) -> None:
        if kind not in TIMER_KINDS:
            raise ValueError(f"unknown timer kind: {kind}")
        timer_set = self._timers.get(contact_number)
        if timer_set is None:
            task.cancel()
            return
        existing = timer_set.tasks.get(kind)
        if existing is not None and existing is not task:
            self._cancel_task(existing)
        timer_set.tasks[kind] = task

    def remove(self, contact_number: str) -> bool:
        """
        Cancel every timer of the contact and forget it.

        Safe to call from inside one of the timers: the running task is not
        cancelled, it simply finds itself stale afterwards.
        """
        timer_set = self._timers.pop(contact_number, None)
        if timer_set is None:
            return False
        self._cancel_tasks(timer_set)
        return True

    def list(self) -> list[PendingTimerSet]:
        return list(self._timers.values())

    def clear(self) -> None:
        for contact_number in list(self._timers):
            self.remove(contact_number)

    def __len__(self) -> int:
        return len(self._timers)

    # ── פנימי ──

    @staticmethod
    def _cancel_task(task: asyncio.Task) -> None:
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not current and not task.done():
            task.cancel()

    def _cancel_tasks(self, timer_set: PendingTimerSet) -> None:
        for task in timer_set.tasks.values():
            self._cancel_task(task)
