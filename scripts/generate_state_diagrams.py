"""
ייצור דיאגרמות Mermaid מטבלת המעברים של השיחה ומסטטוסי ההזמנה.

שימוש:
    python scripts/generate_state_diagrams.py                         # הדפסה למסך
    python scripts/generate_state_diagrams.py --update docs/STATES.md  # עדכון קובץ markdown
    python scripts/generate_state_diagrams.py --check docs/STATES.md   # בדיקה שהדיאגרמות מסונכרנות (ל-CI)
"""
import argparse
import re
import sys
from pathlib import Path
from typing import Any

# הוספת root לנתיב כדי לאפשר ייבוא
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from order_bot.conversation.states import (  # noqa: E402
    GLOBAL_TARGETS,
    INITIAL_STATE,
    SessionState,
    TRANSITIONS,
)
from order_bot.db.models.order import OrderStatus  # noqa: E402

START_MARKER = "<!-- STATE_DIAGRAMS_START -->"
END_MARKER = "<!-- STATE_DIAGRAMS_END -->"

# תוויות קריאות לכל state
DIALOGUE_LABELS: dict[str, str] = {
    SessionState.MAIN_MENU.value: "Main menu",
    SessionState.BROWSING_CATEGORIES.value: "Categories",
    SessionState.VIEWING_ITEMS.value: "Item list",
    SessionState.SEARCHING.value: "Search by name",
    SessionState.SEARCHING_BY_CODE.value: "Search by code",
    SessionState.ADDING_TO_CART.value: "Quantity prompt",
    SessionState.CART_REVIEW.value: "Cart",
    SessionState.ENTERING_ADDRESS.value: "Delivery address",
    SessionState.CONFIRMING_ORDER.value: "Order summary",
    SessionState.TRACKING_ORDER.value: "Order tracking",
    SessionState.RATING_ORDER.value: "Rate an order",
    SessionState.PROVIDING_FEEDBACK.value: "Feedback",
    SessionState.VIEWING_ORDER_HISTORY.value: "Order history",
    SessionState.SELECTING_REORDER.value: "Reorder summary",
}


def generate_mermaid_from_transitions(
    transitions: dict[Any, frozenset[Any]],
    labels: dict[str, str],
    initial: Any,
) -> str:
    """
    ייצור דיאגרמת stateDiagram-v2 מ-transition dictionary.

    Args:
        transitions: מילון מעברים {state: {target_states}}
        labels: מילון תוויות {state_value: "label"}
        initial: ה-state ההתחלתי
    """
    lines: list[str] = ["stateDiagram-v2"]

    all_states: set[str] = set()
    for source, targets in transitions.items():
        all_states.add(source.value)
        for target in targets:
            all_states.add(target.value)

    for state_value in sorted(all_states):
        lines.append(f"    {state_value} : {labels.get(state_value, state_value)}")

    lines.append("")
    lines.append(f"    [*] --> {initial.value}")
    lines.append("")

    # סדר יציב - ה-targets הם frozenset
    for source, targets in transitions.items():
        for target in sorted(targets, key=lambda s: s.value):
            lines.append(f"    {source.value} --> {target.value}")

    return "\n".join(lines)


def generate_global_commands_note() -> str:
    """פקודות גלובליות שזמינות מכל state - מוצגות כטקסט ולא כחצים."""
    targets = ", ".join(sorted(state.value for state in GLOBAL_TARGETS))
    return (
        "Global commands (`menu`, `start`, `restart`, `help`, `ORDER:<id>`) are "
        f"accepted in every state and may lead to: {targets}."
    )


def generate_order_status_diagram() -> str:
    """דיאגרמת OrderStatus: כל סטטוס פתוח יכול לעבור לכל סטטוס אחר, delivered/cancelled סופיים."""
    lines: list[str] = ["stateDiagram-v2"]
    for status in OrderStatus:
        lines.append(f"    {status.value} : {status.value.capitalize()}")
    lines.append("")
    lines.append(f"    [*] --> {OrderStatus.PENDING.value} : checkout confirmed")
    for source in OrderStatus:
        if source.is_terminal:
            lines.append(f"    {source.value} --> [*]")
            continue
        for target in OrderStatus:
            if target == source:
                continue
            note = " : stock deducted" if target == OrderStatus.DELIVERED else ""
            lines.append(f"    {source.value} --> {target.value}{note}")
    return "\n".join(lines)


def generate_all_diagrams() -> dict[str, str]:
    """ייצור כל הדיאגרמות ומחזיר מילון {שם: mermaid_string}."""
    return {
        "Dialogue (SessionState)": generate_mermaid_from_transitions(
            TRANSITIONS, DIALOGUE_LABELS, INITIAL_STATE,
        ),
        "Order lifecycle (OrderStatus)": generate_order_status_diagram(),
    }


def format_diagrams_as_markdown(diagrams: dict[str, str]) -> str:
    """עיצוב הדיאגרמות כ-markdown עם בלוקי mermaid."""
    sections: list[str] = []
    for name, mermaid_code in diagrams.items():
        sections.append(f"#### {name}\n")
        sections.append(f"```mermaid\n{mermaid_code}\n```\n")
    sections.append(generate_global_commands_note() + "\n")
    return "\n".join(sections)


def _section(markdown_content: str) -> str:
    return f"{START_MARKER}\n\n### State diagrams\n\n{markdown_content}\n{END_MARKER}"


_SECTION_PATTERN = re.compile(re.escape(START_MARKER) + r".*?" + re.escape(END_MARKER), re.DOTALL)


def update_markdown_file(path: Path, markdown_content: str) -> None:
    """עדכון (או יצירה) של קובץ markdown עם סעיף הדיאגרמות."""
    new_section = _section(markdown_content)
    content = path.read_text(encoding="utf-8") if path.exists() else ""

    if START_MARKER in content:
        # lambda - כדי ש-backslashes בתוכן לא יפורשו כ-escapes
        content = _SECTION_PATTERN.sub(lambda _: new_section, content)
    else:
        content = (content.rstrip() + "\n\n" if content.strip() else "") + new_section + "\n"

    path.write_text(content, encoding="utf-8")
    print(f"Updated: {path}")


def check_markdown_file(path: Path, markdown_content: str) -> bool:
    """
    בדיקה שהדיאגרמות בקובץ מסונכרנות עם הקוד.

    מחזיר True אם הכל מסונכרן, False אם יש הבדלים.
    """
    if not path.exists():
        print(f"Error: {path} does not exist")
        return False

    match = _SECTION_PATTERN.search(path.read_text(encoding="utf-8"))
    if not match:
        print(f"Error: no state diagram section in {path}")
        return False

    if match.group(0) == _section(markdown_content):
        print("State diagrams are in sync ✓")
        return True

    print(f"Error: state diagrams in {path} are out of date")
    print(f"Run: python scripts/generate_state_diagrams.py --update {path}")
    return False


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Render Mermaid diagrams of the dialogue and order state machines"
    )
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--update", metavar="PATH", type=Path, help="write the diagrams into a markdown file")
    group.add_argument("--check", metavar="PATH", type=Path, help="fail if the file is out of date (CI)")
    args = parser.parse_args(argv)

    markdown = format_diagrams_as_markdown(generate_all_diagrams())

    if args.check:
        return 0 if check_markdown_file(args.check, markdown) else 1
    if args.update:
        update_markdown_file(args.update, markdown)
    else:
        print(markdown)
    return 0


if __name__ == "__main__":
    sys.exit(main())
