"""Client menu: resolution with fallbacks, rendering and selection matching."""

import json
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from pydantic import ValidationError

from ticobot.logging_config import get_logger
from ticobot.schemas.menu import MenuActionType, MenuItem, SubMenuItem
from ticobot.services.api_client import BackendClient

logger = get_logger("menu_service")

MENU_UNAVAILABLE = "Lo siento, el menú no está disponible en este momento. Intenta más tarde."
UNKNOWN_OPTION = (
    'No reconozco esa opción. Por favor elige un número del menú o escribe "menu" para volver a ver '
    'las opciones o "salir" para finalizar.'
)

# Codes the backend menu has always used for these entries.
RESERVED_ACTIONS: dict[str, MenuActionType] = {
    "5": "agent_handoff",
    "8": "account_statement",
    "6": "await_receipt",
}
RECEIPT_PATTERN = re.compile(r"comprobante|recibo|pago", re.IGNORECASE)
TRANSFER_PATTERN = re.compile(r"transfer|asesor|agente|asesores|transferir|transferencia", re.IGNORECASE)


def _menu_rows(raw: Any) -> list:
    if isinstance(raw, dict) and isinstance(raw.get("data"), list):
        return raw["data"]
    return raw if isinstance(raw, list) else []


def parse_menu(raw: Any) -> list[MenuItem]:
    """Build menu items from backend or file JSON, accepting `key` for `keyword`."""
    items = []
    for row in _menu_rows(raw):
        if not isinstance(row, dict):
            continue
        submenu = None
        if isinstance(row.get("submenu"), list) and row["submenu"]:
            submenu = [
                SubMenuItem(
                    key=str(sub.get("key") or sub.get("key_text") or "").lower(),
                    text=str(sub.get("text") or sub.get("reply_message") or ""),
                )
                for sub in row["submenu"]
                if isinstance(sub, dict)
            ]
        try:
            items.append(
                MenuItem(
                    keyword=str(row.get("keyword") or row.get("key") or ""),
                    reply_message=str(row.get("reply_message") or row.get("text") or row.get("response") or ""),
                    options=row.get("options") or [],
                    submenu=submenu,
                    action=row.get("action") or None,
                )
            )
        except ValidationError as exc:
            logger.warning(f"Skipping malformed menu entry: {exc}")
    return items


class MenuResolver:
    """Memory cache, then the backend (persisted locally), then BOT_MENU_PATH, then the local copy."""

    def __init__(
        self,
        backend: BackendClient,
        *,
        data_dir: str = "data",
        menu_path: Optional[str] = None,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.backend = backend
        self.local_path = Path(data_dir) / "menu.json"
        self.menu_path = Path(menu_path) if menu_path else None
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._cache: list[MenuItem] = []
        self._cached_at: Optional[float] = None

    def invalidate(self) -> None:
        self._cache = []
        self._cached_at = None

    def _remember(self, items: list[MenuItem]) -> list[MenuItem]:
        self._cache = items
        self._cached_at = self._clock()
        return items

    async def resolve(self) -> list[MenuItem]:
        if self._cache and self._cached_at is not None and self._clock() - self._cached_at < self.ttl_seconds:
            return self._cache

        try:
            remote = await self.backend.fetch_bot_menu()
        except Exception as exc:
            logger.debug(f"Could not fetch menu from backend: {exc}")
        else:
            rows = _menu_rows(remote)
            items = parse_menu(rows)
            if items:
                self._persist(rows)
                return self._remember(items)

        for path in (self.menu_path, self.local_path):
            if path is None:
                continue
            items = parse_menu(self._read(path))
            if items:
                return self._remember(items)
        return []

    def _persist(self, rows: list) -> None:
        try:
            self.local_path.parent.mkdir(parents=True, exist_ok=True)
            self.local_path.write_text(json.dumps(rows, indent=2, ensure_ascii=False), encoding="utf-8")
        except OSError as exc:
            logger.debug(f"Could not persist remote menu locally: {exc}")

    @staticmethod
    def _read(path: Path) -> Any:
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.debug(f"Could not read menu file {path}: {exc}")
            return None


def render_welcome(items: list[MenuItem], company_name: str) -> str:
    lines = [
        "Hola! Bienvenido a nuestro 🤖 CHATBOT",
        f"Somos {company_name}, por favor envía el número de una de las siguientes opciones:",
        "",
    ]
    for index, item in enumerate(items, start=1):
        label = item.reply_message.split("\n")[0]
        lines.append(f"{item.keyword or index} - {label}")
    lines += ["", 'Escribe "menu" para volver al inicio o "salir" para finalizar la conversación.']
    return "\n".join(lines)


@dataclass
class MenuChoice:
    item: MenuItem
    action: MenuActionType
    # True when the action was guessed from the reply text rather than declared.
    inferred: bool = False


def leading_number(body: str) -> Optional[int]:
    match = re.match(r"\s*(\d+)", body or "")
    return int(match.group(1)) if match else None


def match_selection(items: list[MenuItem], body: str, *, submenu: bool = False) -> Optional[MenuItem]:
    """1-based index on the top-level menu, otherwise exact keyword (case-insensitive)."""
    if not items:
        return None
    if not submenu:
        number = leading_number(body)
        if number is not None and 1 <= number <= len(items):
            return items[number - 1]
    wanted = (body or "").strip()
    for item in items:
        if item.keyword and (item.keyword.lower() == wanted.lower() or item.keyword == wanted):
            return item
    return None


def resolve_action(item: MenuItem, body: str = "") -> MenuChoice:
    if item.action:
        return MenuChoice(item, item.action)
    number = leading_number(body)
    for code, action in RESERVED_ACTIONS.items():
        if item.keyword.strip() == code or (number is not None and str(number) == code):
            return MenuChoice(item, action)
    # TODO: drop the text heuristics once every backend menu entry carries an explicit action.
    if RECEIPT_PATTERN.search(item.reply_message):
        return MenuChoice(item, "await_receipt", inferred=True)
    if TRANSFER_PATTERN.search(item.reply_message):
        return MenuChoice(item, "agent_handoff", inferred=True)
    return MenuChoice(item, "reply")
