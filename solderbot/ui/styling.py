# Palette and Qt stylesheet for the operator console

BG_MAIN    = "#EEF1F4"
BG_CARD    = "#FBFCFD"
BG_FIELD   = "#FFFFFF"
PRIMARY    = "#C2410C"   # solder-iron orange
PRIM_HOVER = "#9A3412"
TEXT       = "#111827"
TEXT_SUB   = "#5B6472"
BORDER     = "#D5DAE1"

OK_GREEN  = "#15803D"
WARN_AMB  = "#B45309"
ERR_RED   = "#B91C1C"
INFO_BLUE = "#1D4ED8"
SECONDARY = "#475569"

# statusChanged(msg, color) carries these names
STATUS_COLORS = {
    "green": OK_GREEN,
    "orange": WARN_AMB,
    "red": ERR_RED,
    "blue": INFO_BLUE,
}

LINK_COLORS = {
    "disconnected": ERR_RED,
    "connected-idle": WARN_AMB,
    "streaming": OK_GREEN,
}

STAGE_COLORS = {
    "idle": SECONDARY,
    "flux": INFO_BLUE,
    "positioning": INFO_BLUE,
    "preheat": WARN_AMB,
    "dispense": PRIMARY,
    "cooling": INFO_BLUE,
    "cleaning": SECONDARY,
    "retracting": SECONDARY,
    "error": ERR_RED,
}


def status_color(name: str) -> str:
    return STATUS_COLORS.get(name, name)


def _button(prop: str, fg: str, bg: str, edge: str) -> str:
    return f"""
QPushButton[{prop}="true"] {{ background: {bg}; color: {fg}; border: 1px solid {edge}; }}
QPushButton[{prop}="true"]:hover {{ background: {fg}; color: {BG_FIELD}; border-color: {fg}; }}
"""


STYLE_SHEET = f"""
QMainWindow, QScrollArea > QWidget > QWidget {{ background: {BG_MAIN}; }}
QScrollArea {{ border: 0; }}
QWidget {{ color: {TEXT}; font-size: 13px; font-family: "Inter", "Noto Sans", "Arial", sans-serif; }}

QGroupBox {{
    background: {BG_CARD};
    border: 1px solid {BORDER};
    border-left: 3px solid {PRIMARY};
    border-radius: 4px;
    margin-top: 18px;
    padding: 10px 10px 8px 10px;
}}
QGroupBox::title {{
    subcontrol-origin: margin;
    left: 10px;
    padding: 0 4px;
    color: {SECONDARY};
    font-size: 12px;
    font-weight: bold;
    letter-spacing: 1px;
}}
QGroupBox QGroupBox {{ border-left: 1px solid {BORDER}; }}

QLineEdit, QComboBox, QSpinBox, QDoubleSpinBox {{
    background: {BG_FIELD};
    border: 1px solid {BORDER};
    border-radius: 3px;
    padding: 4px 8px;
    min-height: 22px;
}}
QLineEdit:focus, QComboBox:focus, QSpinBox:focus, QDoubleSpinBox:focus {{ border-color: {PRIMARY}; }}
QLineEdit:disabled, QSpinBox:disabled, QDoubleSpinBox:disabled {{ color: {TEXT_SUB}; background: {BG_MAIN}; }}

QPushButton {{
    background: {BG_FIELD};
    border: 1px solid {BORDER};
    border-radius: 3px;
    padding: 6px 12px;
    min-width: 64px;
    font-weight: bold;
}}
QPushButton:hover {{ border-color: {SECONDARY}; }}
QPushButton:checked {{ background: {OK_GREEN}; color: {BG_FIELD}; border-color: {OK_GREEN}; }}
QPushButton:disabled {{ color: #A0A7B1; background: {BG_MAIN}; border-color: {BORDER}; }}
QPushButton[primary="true"] {{ background: {PRIMARY}; color: {BG_FIELD}; border: 1px solid {PRIMARY}; }}
QPushButton[primary="true"]:hover {{ background: {PRIM_HOVER}; border-color: {PRIM_HOVER}; }}
{_button("danger", ERR_RED, "#FDF0F0", "#F3C4C4")}
{_button("warn", WARN_AMB, "#FDF6EA", "#F0D3A4")}

QLabel[role="value"] {{ font-family: "JetBrains Mono", "DejaVu Sans Mono", monospace; font-size: 14px; }}
QLabel[role="hint"] {{ color: {TEXT_SUB}; font-size: 12px; }}

QProgressBar {{
    background: {BG_MAIN};
    border: 1px solid {BORDER};
    border-radius: 3px;
    min-height: 16px;
    text-align: center;
}}
QProgressBar::chunk {{ background: {PRIMARY}; }}

QFrame#wireBreakBanner {{ background: #FDF0F0; border: 1px solid {ERR_RED}; border-radius: 4px; }}
QFrame#wireBreakBanner QLabel {{ color: {ERR_RED}; font-weight: bold; }}

QStatusBar {{ background: {BG_CARD}; border-top: 1px solid {BORDER}; }}
QSplitter::handle {{ background: {BORDER}; }}
"""
