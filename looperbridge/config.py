"""
Bridge configuration - defaults, YAML file, then command directives.

YAML layout (every key optional):

    midi:
      input: FCB1010          # pedal controller, exact name or substring
      led_output: null        # MIDI device for LED feedback, null = text on stdout
      virtual_output: looperbridge_out
      channel: 0              # 0 = omni in / channel 1 out, 1-16 = that channel
      base_note: 64           # number or note name, e.g. E3
    osc:
      send_port: 9951         # SooperLooper
      receive_port: 9000
    tick_interval: 0.2

Directives (command line tokens, applied after the file):

    din <name>      MIDI input device
    dout <name>     MIDI LED output device
    vout [name]     virtual MIDI output name
    ch <n>          MIDI channel 0-16
    base <note>     base note, number or name
    oin <port>      OSC receive port
    oout <port>     OSC send port
    list            list MIDI devices
    panic           send all-notes-off on every channel

Numbers take an optional H (hex) or M (decimal) suffix: 40H == 64M == 64.
"""

import re
from dataclasses import dataclass, fields
from pathlib import Path
from typing import List, Optional, Tuple

import yaml

from looperbridge.midi import DEFAULT_VIRTUAL_OUT_NAME
from looperbridge.osc import DEFAULT_RECEIVE_PORT, DEFAULT_SEND_PORT, validate_port

DEFAULT_BASE_NOTE = 64
DEFAULT_TICK_INTERVAL = 0.2

# Note names are numbered with middle C as C3
MIDDLE_C_OCTAVE = 3

ACTION_LIST = "list"
ACTION_PANIC = "panic"

NOTE_SEMITONES = {'C': 0, 'D': 2, 'E': 4, 'F': 5, 'G': 7, 'A': 9, 'B': 11, 'H': 11}
NOTE_NAME_PATTERN = re.compile(r'^([A-H])([#B]?)(-?\d+)$')


@dataclass
class BridgeConfig:
    midi_input: Optional[str] = None
    led_output: Optional[str] = None
    virtual_output: str = DEFAULT_VIRTUAL_OUT_NAME
    channel: int = 0
    base_note: int = DEFAULT_BASE_NOTE
    osc_send_port: int = DEFAULT_SEND_PORT
    osc_receive_port: int = DEFAULT_RECEIVE_PORT
    tick_interval: float = DEFAULT_TICK_INTERVAL


# ============================================================================
# VALUE PARSING
# ============================================================================

def _clamp(value: int, high: int) -> int:
    return max(0, min(high, value))


def parse_int(value: str) -> int:
    """Parse a number with an optional H (hex) or M (decimal) suffix.

    Raises:
        ValueError: If value is not a number

    Examples:
        >>> parse_int("40H")
        64
        >>> parse_int("64m")
        64
    """
    text = str(value).strip()
    try:
        if text[-1:] in ('h', 'H'):
            return int(text[:-1], 16)
        if text[-1:] in ('m', 'M'):
            return int(text[:-1])
        return int(text)
    except ValueError:
        raise ValueError(f"Not a number: {value!r}") from None


def parse_7bit(value: str) -> int:
    """Parse a number and clamp it to 0-127."""
    return _clamp(parse_int(value), 0x7f)


def parse_port(value: str) -> int:
    """Parse a UDP port number.

    Raises:
        ValueError: If the value is not a number or not in 1-65535
    """
    port = _clamp(parse_int(value), 0xffff)
    validate_port(port)
    return port


def parse_note(value) -> int:
    """Parse a note number or a note name into 0-127.

    Names are a letter, an optional sharp (#) or flat (b), then the octave,
    with middle C as C3 = 60.

    Examples:
        >>> parse_note("C3")
        60
        >>> parse_note("E3")
        64
        >>> parse_note("Bb2")
        58
        >>> parse_note("40H")
        64
    """
    if isinstance(value, int) and not isinstance(value, bool):
        return _clamp(value, 0x7f)

    text = str(value).strip().upper()
    match = NOTE_NAME_PATTERN.match(text)
    if match:
        letter, accidental, octave = match.groups()
        note = NOTE_SEMITONES[letter]
        if accidental == 'B':
            note -= 1
        elif accidental == '#':
            note += 1
        note += (int(octave) + 5 - MIDDLE_C_OCTAVE) * 12
        return _clamp(note, 0x7f)
    return parse_7bit(text)


# ============================================================================
# YAML FILE
# ============================================================================

def load_config(path: str, config: Optional[BridgeConfig] = None) -> BridgeConfig:
    """Load configuration from a YAML file.

    Args:
        path: Path to the YAML file
        config: Configuration to update, defaults to a fresh BridgeConfig

    Returns:
        Updated configuration

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the file is not valid YAML or fails validation
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {path}\n"
            f"See config.yaml.example for a template."
        )

    try:
        with open(config_path, 'r') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        data = {}
    validate_config(data)

    config = config if config is not None else BridgeConfig()
    midi = data.get('midi') or {}
    osc_section = data.get('osc') or {}

    if 'input' in midi:
        config.midi_input = midi['input']
    if 'led_output' in midi:
        config.led_output = midi['led_output']
    if 'virtual_output' in midi:
        config.virtual_output = midi['virtual_output']
    if 'channel' in midi:
        config.channel = midi['channel']
    if 'base_note' in midi:
        config.base_note = parse_note(midi['base_note'])
    if 'send_port' in osc_section:
        config.osc_send_port = osc_section['send_port']
    if 'receive_port' in osc_section:
        config.osc_receive_port = osc_section['receive_port']
    if 'tick_interval' in data:
        config.tick_interval = float(data['tick_interval'])

    return config


def validate_config(data: dict) -> None:
    """Validate a configuration dictionary loaded from YAML.

    Raises:
        ValueError: If any section or value is invalid
    """
    if not isinstance(data, dict):
        raise ValueError(f"Configuration must be a mapping, got {type(data).__name__}")

    unknown = set(data) - {'midi', 'osc', 'tick_interval'}
    if unknown:
        raise ValueError(f"Unknown configuration sections: {', '.join(sorted(map(str, unknown)))}")

    midi = data.get('midi') or {}
    if not isinstance(midi, dict):
        raise ValueError("'midi' section must be a mapping")
    for key in ('input', 'led_output'):
        value = midi.get(key)
        if value is not None and not isinstance(value, str):
            raise ValueError(f"midi.{key} must be a device name, got {value!r}")
    virtual_output = midi.get('virtual_output', DEFAULT_VIRTUAL_OUT_NAME)
    if not isinstance(virtual_output, str) or not virtual_output:
        raise ValueError(f"midi.virtual_output must be a non-empty name, got {virtual_output!r}")

    channel = midi.get('channel', 0)
    if isinstance(channel, bool) or not isinstance(channel, int) or not 0 <= channel <= 16:
        raise ValueError(f"midi.channel must be 0-16, got {channel!r}")

    if 'base_note' in midi:
        base_note = midi['base_note']
        if isinstance(base_note, bool) or not isinstance(base_note, (int, str)):
            raise ValueError(f"midi.base_note must be a note number or name, got {base_note!r}")
        if isinstance(base_note, int) and not 0 <= base_note <= 127:
            raise ValueError(f"midi.base_note must be 0-127, got {base_note}")
        if isinstance(base_note, str):
            parse_note(base_note)

    osc_section = data.get('osc') or {}
    if not isinstance(osc_section, dict):
        raise ValueError("'osc' section must be a mapping")
    for key in ('send_port', 'receive_port'):
        if key in osc_section:
            try:
                validate_port(osc_section[key])
            except ValueError as e:
                raise ValueError(f"osc.{key}: {e}") from e
    if osc_section.get('send_port', DEFAULT_SEND_PORT) == osc_section.get('receive_port', DEFAULT_RECEIVE_PORT):
        raise ValueError("osc.send_port and osc.receive_port cannot be the same")

    tick_interval = data.get('tick_interval', DEFAULT_TICK_INTERVAL)
    if isinstance(tick_interval, bool) or not isinstance(tick_interval, (int, float)) or tick_interval <= 0:
        raise ValueError(f"tick_interval must be a positive number of seconds, got {tick_interval!r}")


# ============================================================================
# DIRECTIVES
# ============================================================================

DIRECTIVES = {
    # name: (arg count, or -1 for one optional arg)
    "din": 1,
    "dout": 1,
    "vout": -1,
    "ch": 1,
    "base": 1,
    "oin": 1,
    "oout": 1,
    ACTION_LIST: 0,
    ACTION_PANIC: 0,
}


def tokenize_directives(tokens: List[str]) -> List[Tuple[str, List[str]]]:
    """Group tokens into (directive, args) pairs.

    Raises:
        ValueError: On an unknown directive or a missing argument
    """
    commands = []
    i = 0
    while i < len(tokens):
        name = tokens[i].lower()
        if name not in DIRECTIVES:
            raise ValueError(f"Unknown directive: {tokens[i]!r}")
        arity = DIRECTIVES[name]
        i += 1
        if arity == -1:
            if i < len(tokens) and tokens[i].lower() not in DIRECTIVES:
                commands.append((name, [tokens[i]]))
                i += 1
            else:
                commands.append((name, []))
            continue
        args = tokens[i:i + arity]
        if len(args) < arity:
            raise ValueError(f"Directive {name!r} needs {arity} argument(s)")
        commands.append((name, args))
        i += arity
    return commands


def apply_directives(config: BridgeConfig, tokens: List[str]) -> List[str]:
    """Apply directive tokens to config.

    Returns:
        Actions (ACTION_LIST, ACTION_PANIC) for the runtime to run, in order

    Raises:
        ValueError: On an unknown directive or a bad value
    """
    actions = []
    for name, args in tokenize_directives(tokens):
        if name == "din":
            config.midi_input = args[0]
        elif name == "dout":
            config.led_output = args[0]
        elif name == "vout":
            config.virtual_output = args[0] if args else DEFAULT_VIRTUAL_OUT_NAME
        elif name == "ch":
            channel = parse_7bit(args[0])
            if channel > 16:
                raise ValueError(f"MIDI channel must be 0-16, got {channel}")
            config.channel = channel
        elif name == "base":
            config.base_note = parse_note(args[0])
        elif name == "oin":
            config.osc_receive_port = parse_port(args[0])
        elif name == "oout":
            config.osc_send_port = parse_port(args[0])
        else:
            actions.append(name)

    if config.osc_send_port == config.osc_receive_port:
        raise ValueError(f"OSC send and receive port cannot be the same ({config.osc_send_port})")
    return actions


def describe(config: BridgeConfig) -> str:
    return ", ".join(f"{f.name}={getattr(config, f.name)!r}" for f in fields(config))
