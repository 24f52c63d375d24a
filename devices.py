# SPDX-License-Identifier: GPL-3.0-or-later
"""
OS boundary: global input hook and input simulation.

The input backend (``PynputBackend`` here) offers ``listen(...)``, ``move``,
``button``, ``key``, ``scroll`` and ``hotkeys``. The screen source lives in
``screen.py``.

Recorder and Player only see plain strings and ints, so tests can swap the
backend for a fake without touching pynput.
"""
import logging
from typing import Any, Callable, Dict

from pynput import keyboard, mouse

from errors import HookUnavailable, SimulationRejected

logger = logging.getLogger(__name__)

# ---- Key / button serialization -------------------------------------

def key_to_str(k: Any) -> str:
    """Serialize pynput key/char to a stable string."""
    # character keys
    if getattr(k, "char", None) is not None:
        return f"char:{k.char}"
    # named keys (esc, cmd, shift, etc.)
    name = getattr(k, "name", None)
    if name:
        return f"key:{name}"
    vk = getattr(k, "vk", None)
    if vk is not None:
        return f"vk:{vk}"
    return f"key:{k}"


def str_to_key(s: str):
    """Deserialize string to pynput key/char. Returns None if unknown."""
    kind, _, value = s.partition(":")
    if kind == "char":
        return value
    if kind == "vk":
        try:
            return keyboard.KeyCode.from_vk(int(value))
        except ValueError:
            return None
    if kind == "key":
        if value.startswith("Key."):
            value = value.split(".", 1)[1]
        try:
            return keyboard.Key[value]
        except KeyError:
            return None
    return None


def button_to_str(b: mouse.Button) -> str:
    if b == mouse.Button.left:
        return "left"
    if b == mouse.Button.right:
        return "right"
    if b == mouse.Button.middle:
        return "middle"
    return getattr(b, "name", str(b))


def str_to_button(s: str) -> mouse.Button:
    try:
        return mouse.Button[s]
    except KeyError:
        raise SimulationRejected(f"unknown mouse button {s!r}")


def hotkey_label(name: str) -> str:
    """'F8' -> '<f8>', 'esc' -> '<esc>', 'a' -> 'a' (GlobalHotKeys syntax)."""
    name = name.strip()
    if len(name) == 1:
        return name.lower()
    return f"<{name.lower()}>"

# ---- Input hook + simulation ----------------------------------------

class _ListenerHook:
    def __init__(self, *listeners) -> None:
        self._listeners = listeners

    def stop(self) -> None:
        for listener in self._listeners:
            listener.stop()
        for listener in self._listeners:
            if listener.is_alive():
                listener.join(timeout=1.0)


class PynputBackend:
    """
    Global mouse/keyboard hook and event synthesis using pynput.
    """
    def __init__(self) -> None:
        self._mouse = mouse.Controller()
        self._kbd = keyboard.Controller()

    # ---- capture ----
    def listen(self,
               on_move: Callable[[int, int], None],
               on_click: Callable[[int, int, str, bool], None],
               on_scroll: Callable[[int, int, int, int], None],
               on_press: Callable[[str], None],
               on_release: Callable[[str], None]) -> _ListenerHook:
        m_listener = mouse.Listener(
            on_move=lambda x, y: on_move(int(x), int(y)),
            on_click=lambda x, y, b, p: on_click(int(x), int(y), button_to_str(b), bool(p)),
            on_scroll=lambda x, y, dx, dy: on_scroll(int(x), int(y), int(dx), int(dy)),
        )
        k_listener = keyboard.Listener(
            on_press=lambda k: on_press(key_to_str(k)),
            on_release=lambda k: on_release(key_to_str(k)),
        )
        hook = _ListenerHook(m_listener, k_listener)
        try:
            for listener in (m_listener, k_listener):
                listener.daemon = True
                listener.start()
            for listener in (m_listener, k_listener):
                listener.wait()
                if not listener.is_alive():
                    raise HookUnavailable("input listener exited during startup")
                # macOS: Accessibility / Input Monitoring not granted
                if getattr(listener, "IS_TRUSTED", True) is False:
                    raise HookUnavailable("process is not trusted to monitor input")
        except HookUnavailable:
            hook.stop()
            raise
        except Exception as e:
            hook.stop()
            raise HookUnavailable(f"cannot install input hook: {e}") from e
        return hook

    def hotkeys(self, bindings: Dict[str, Callable[[], None]]):
        ghk = keyboard.GlobalHotKeys({hotkey_label(k): fn for k, fn in bindings.items()})
        ghk.daemon = True
        ghk.start()
        return ghk

    # ---- simulation ----
    def move(self, x: int, y: int) -> None:
        try:
            self._mouse.position = (int(x), int(y))
        except Exception as e:
            raise SimulationRejected(f"move to ({x}, {y}) rejected: {e}", e) from e

    def button(self, button: str, pressed: bool) -> None:
        btn = str_to_button(button)
        try:
            if pressed:
                self._mouse.press(btn)
            else:
                self._mouse.release(btn)
        except Exception as e:
            raise SimulationRejected(f"{button} button event rejected: {e}", e) from e

    def key(self, key: str, pressed: bool) -> None:
        k = str_to_key(key)
        if k is None:
            raise SimulationRejected(f"unknown key {key!r}")
        try:
            if pressed:
                self._kbd.press(k)
            else:
                self._kbd.release(k)
        except Exception as e:
            raise SimulationRejected(f"key event {key!r} rejected: {e}", e) from e

    def scroll(self, dx: int, dy: int) -> None:
        try:
            self._mouse.scroll(int(dx), int(dy))
        except Exception as e:
            raise SimulationRejected(f"scroll ({dx}, {dy}) rejected: {e}", e) from e

