"""
Terminal UI helpers: Nord palette, pyfiglet banner, styled messages and
prompts. Every printed message is mirrored to the log file through the
``lempkit.ui`` logger.
"""

import logging
import os
import shutil
from typing import List, Optional

import pyfiglet
from prompt_toolkit import prompt as pt_prompt
from prompt_toolkit.completion import PathCompleter
from prompt_toolkit.styles import Style as PtStyle
from rich import box
from rich.align import Align
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.text import Text
from rich.theme import Theme

from lempkit import APP_NAME, VERSION

UI_LOGGER_NAME: str = "lempkit.ui"


# ----------------------------------------------------------------
# Nord-Themed Colors
# ----------------------------------------------------------------
class NordColors:
    """Nord color palette for consistent UI styling."""

    POLAR_NIGHT_1: str = "#2E3440"
    POLAR_NIGHT_2: str = "#3B4252"
    POLAR_NIGHT_3: str = "#434C5E"
    POLAR_NIGHT_4: str = "#4C566A"
    SNOW_STORM_1: str = "#D8DEE9"
    SNOW_STORM_2: str = "#E5E9F0"
    SNOW_STORM_3: str = "#ECEFF4"
    FROST_1: str = "#8FBCBB"
    FROST_2: str = "#88C0D0"
    FROST_3: str = "#81A1C1"
    FROST_4: str = "#5E81AC"
    RED: str = "#BF616A"
    ORANGE: str = "#D08770"
    YELLOW: str = "#EBCB8B"
    GREEN: str = "#A3BE8C"
    PURPLE: str = "#B48EAD"

    @classmethod
    def get_frost_gradient(cls, steps: int = 4) -> List[str]:
        """Returns a gradient using the frost color palette."""
        frosts = [cls.FROST_1, cls.FROST_2, cls.FROST_3, cls.FROST_4]
        return frosts[:steps]


nord_theme = Theme(
    {
        "banner": f"bold {NordColors.FROST_2}",
        "header": f"bold {NordColors.FROST_2}",
        "info": NordColors.FROST_2,
        "warning": NordColors.YELLOW,
        "error": NordColors.RED,
        "debug": NordColors.POLAR_NIGHT_3,
        "success": NordColors.GREEN,
    }
)

console = Console(theme=nord_theme)

_pt_style = PtStyle.from_dict({"prompt": f"bold {NordColors.FROST_2}"})


def _log(level: int, text: str) -> None:
    logging.getLogger(UI_LOGGER_NAME).log(level, text)


# ----------------------------------------------------------------
# Output Helpers
# ----------------------------------------------------------------
def clear_screen() -> None:
    console.clear()


def create_header(title: str = APP_NAME) -> Panel:
    """
    Generate an ASCII art header with gradient styling using Pyfiglet.
    The banner is built line-by-line into a Rich Text object to avoid stray markup tokens.
    """
    term_width, _ = shutil.get_terminal_size((80, 24))
    fonts: List[str] = ["slant", "small", "mini", "digital"]

    ascii_art = ""
    for font in fonts:
        try:
            fig = pyfiglet.Figlet(font=font, width=min(term_width - 10, 120))
            ascii_art = fig.renderText(title)
            if ascii_art.strip():
                break
        except Exception:
            continue

    ascii_lines = [line for line in ascii_art.splitlines() if line.strip()]
    colors = NordColors.get_frost_gradient(len(ascii_lines) or 1)
    combined_text = Text()
    for i, line in enumerate(ascii_lines):
        color = colors[i % len(colors)]
        combined_text.append(Text(line, style=f"bold {color}"))
        if i < len(ascii_lines) - 1:
            combined_text.append("\n")

    return Panel(
        Align.center(combined_text),
        border_style=NordColors.FROST_1,
        padding=(1, 2),
        title=Text(f"v{VERSION}", style=f"bold {NordColors.SNOW_STORM_2}"),
        title_align="right",
        subtitle=Text(
            "Server Setup & Management", style=f"bold {NordColors.SNOW_STORM_1}"
        ),
        subtitle_align="center",
        box=box.ROUNDED,
    )


def print_message(
    text: str, style: str = NordColors.FROST_2, prefix: str = "•"
) -> None:
    """Print a styled message with a prefix."""
    console.print(f"[{style}]{prefix} {text}[/{style}]")


def print_step(message: str) -> None:
    print_message(message, NordColors.FROST_2, "→")
    _log(logging.INFO, message)


def print_success(message: str) -> None:
    print_message(message, NordColors.GREEN, "✓")
    _log(logging.INFO, message)


def print_warning(message: str) -> None:
    print_message(message, NordColors.YELLOW, "⚠")
    _log(logging.WARNING, message)


def print_error(message: str) -> None:
    print_message(message, NordColors.RED, "✗")
    _log(logging.ERROR, message)


def print_section(title: str) -> None:
    """Print a section header."""
    console.print()
    console.print(f"[bold {NordColors.FROST_3}]{title}[/]")
    console.print(f"[{NordColors.FROST_3}]{'─' * len(title)}[/]")
    _log(logging.INFO, f"--- {title} ---")


def display_panel(
    message: str, style: str = NordColors.FROST_2, title: Optional[str] = None
) -> None:
    """Display a styled panel with a message."""
    panel = Panel(
        Text(message, style=style),
        border_style=style,
        padding=(1, 2),
        title=f"[bold {style}]{title}[/]" if title else None,
        box=box.ROUNDED,
    )
    console.print(panel)


# ----------------------------------------------------------------
# Prompts
# ----------------------------------------------------------------
def ask(message: str, default: Optional[str] = None) -> str:
    """Prompt for a line of text, stripped."""
    if default is None:
        answer = Prompt.ask(f"[bold {NordColors.FROST_2}]{message}[/]")
    else:
        answer = Prompt.ask(f"[bold {NordColors.FROST_2}]{message}[/]", default=default)
    return (answer or "").strip()


def ask_secret(message: str) -> str:
    return Prompt.ask(f"[bold {NordColors.FROST_2}]{message}[/]", password=True) or ""


def ask_path(message: str, only_directories: bool = False) -> str:
    """Prompt for a local path with prompt_toolkit tab completion."""
    completer = PathCompleter(only_directories=only_directories, expanduser=True)
    answer = pt_prompt(
        [("class:prompt", f"{message}: ")], completer=completer, style=_pt_style
    )
    return os.path.expanduser(answer.strip())


def confirm(message: str, default: bool = False) -> bool:
    return Confirm.ask(f"[bold {NordColors.YELLOW}]{message}[/]", default=default)


def ask_typed_confirmation(name: str) -> str:
    """Ask the operator to type ``name`` back before a destructive change."""
    return ask(f"To confirm, please type '{name}'")


def pause(message: str = "Press Enter to continue") -> None:
    Prompt.ask(f"[{NordColors.FROST_3}]{message}[/]", default="", show_default=False)
