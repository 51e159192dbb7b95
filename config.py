"""
Sprint gate runtime configuration.
"""

# Gate hub (relay + reference clock)
HUB_CONFIG = {
    "host": "0.0.0.0",        # Listen on all interfaces
    "port": 8765,             # Listen port
    "status_interval": 5.0,   # Seconds between status lines
}

# Gate device connecting to the hub
NODE_CONFIG = {
    "hub_host": "127.0.0.1",  # Hub address
    "hub_port": 8765,         # Hub port
    "reply_timeout": 1.0,     # Seconds to wait for a time reply
    "status_interval": 5.0,   # Seconds between status lines
    "calibrate_on_start": True,
}

# Clock sync
SYNC_CONFIG = {
    "burst_count": 5,             # Startup probes
    "burst_spacing_ms": 100.0,
    "sync_interval_s": 30.0,      # Drift correction period
    "sync_count": 5,              # Probes per correction
    "sync_spacing_ms": 50.0,
    "max_rtt_ms": 200.0,          # Correction outlier threshold
    "max_correction_ms": 50.0,    # Clamp per correction
    "alpha": 0.3,                 # EMA factor
    "link_count": 20,             # Calibration link probes
    "echo_max_rtt_ms": 500.0,     # Echo outlier threshold
}

# Motion tripwire
MOTION_CONFIG = {
    "sensitivity": 25.0,      # Mean luminance delta (0-255)
    "strip_width": 20,        # Center strip width (px)
    "cooldown_ms": 2000.0,    # Minimum gap between triggers
}

# Race windowing
RACE_CONFIG = {
    "gate_count": 2,          # START + FINISH
    "distances": [],          # Distance of gate i+1 from the start (m)
}

# Logging
LOGGING_CONFIG = {
    "level": "INFO",
    "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
}
