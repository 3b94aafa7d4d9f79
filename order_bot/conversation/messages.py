"""
Outbound message effects.

Handlers describe what to send; nothing here talks to the transport. The
OutboundDispatcher turns these into provider calls after the session is
committed.
"""
from dataclasses import dataclass, field

MAX_BUTTONS = 3
MAX_LIST_ROWS = 10


@dataclass(frozen=True)
class Button:
    id: str
    title: str


@dataclass(frozen=True)
class ListRow:
    id: str
    title: str
    description: str = ""


@dataclass(frozen=True)
class ListSection:
    rows: tuple[ListRow, ...]
    title: str = ""


@dataclass(frozen=True)
class TextMessage:
    body: str


@dataclass(frozen=True)
class ButtonMessage:
    body: str
    buttons: tuple[Button, ...]

    def __post_init__(self):
        if not 1 <= len(self.buttons) <= MAX_BUTTONS:
            raise ValueError(f"Button message needs 1-{MAX_BUTTONS} buttons, got {len(self.buttons)}")


@dataclass(frozen=True)
class ListMessage:
    body: str
    button_text: str
    sections: tuple[ListSection, ...]
    header: str | None = None
    footer: str | None = None

    def __post_init__(self):
        total = sum(len(section.rows) for section in self.sections)
        if not 1 <= total <= MAX_LIST_ROWS:
            raise ValueError(f"List message needs 1-{MAX_LIST_ROWS} rows, got {total}")

    @property
    def rows(self) -> list[ListRow]:
        return [row for section in self.sections for row in section.rows]


@dataclass(frozen=True)
class ImageMessage:
    url: str
    caption: str = ""


OutboundMessage = TextMessage | ButtonMessage | ListMessage | ImageMessage


def single_section_list(
    body: str,
    button_text: str,
    rows: list[ListRow],
    *,
    header: str | None = None,
    footer: str | None = None,
) -> ListMessage:
    return ListMessage(
        body=body,
        button_text=button_text,
        sections=(ListSection(rows=tuple(rows)),),
        header=header,
        footer=footer,
    )


@dataclass
class DialogueResult:
    """What the engine decided for one inbound message"""
    state: str
    messages: list[OutboundMessage] = field(default_factory=list)
    duplicate: bool = False
