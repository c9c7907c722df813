"""
looperbridge - FCB1010 foot pedal to SooperLooper bridge.

Modules:
    pedal: Pedal MIDI events to looper notes
    leds: Loop state to pedal LED state machine
    session: OSC session with the looper engine
    supervisor: Periodic MIDI/OSC connection reconciliation
    display: Requests and broadcasts for remote LED displays
    runtime: Event queue and component wiring
    cli: Command line entry point
"""

__version__ = "0.1.0"

# Note: Modules are imported on-demand so python -m looperbridge.cli
# works without a RuntimeWarning.
