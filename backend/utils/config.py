"""Configuration from environment."""
import os

PORT = int(os.environ.get("PORT", "8001"))

CHARGE_POINT_ID = os.environ.get("CHARGE_POINT_ID", "CP001")
CSMS_URL = os.environ.get("CSMS_URL", "wss://central-station.example.com/ocpp")

# "simulated" answers in-process like a permissive CSMS; "websocket" dials CSMS_URL.
STATION_TRANSPORT = os.environ.get("STATION_TRANSPORT", "simulated").lower()
BASIC_AUTH_PASSWORD = os.environ.get("BASIC_AUTH_PASSWORD") or None

# Fixed seed makes latency, meter readings and firmware progress reproducible.
SIM_SEED = int(os.environ["SIM_SEED"]) if os.environ.get("SIM_SEED") else None
SIM_MIN_LATENCY_S = float(os.environ.get("SIM_MIN_LATENCY_S", "0.5"))
SIM_MAX_LATENCY_S = float(os.environ.get("SIM_MAX_LATENCY_S", "1.5"))

CONNECTOR_COUNT = int(os.environ.get("CONNECTOR_COUNT", "2"))
CONNECTOR_MAX_POWER_W = int(os.environ.get("CONNECTOR_MAX_POWER_W", "22000"))
MESSAGE_LOG_CAPACITY = int(os.environ.get("MESSAGE_LOG_CAPACITY", "100"))
