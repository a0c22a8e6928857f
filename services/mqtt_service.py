# services/mqtt_service.py
import paho.mqtt.client as mqtt
import logging
import threading
import json
import time
import queue
import uuid
from typing import Dict, Any, Optional, List

from core.app_state import AppState
from core.config_loader import parse_broker_url
from core.constants import (
    MQTT_SERVICE_THREAD_NAME, HA_DISCOVERY_REFRESH_SECONDS, HA_EXPIRE_AFTER_SECONDS,
    OVERRIDE_TOPIC_SUFFIX,
)
from core.exceptions import InvalidControlValueError
from core.measurements import MeasurementSet
from core.override_arbiter import PowerOverrideArbiter, parse_override_command
from utils.helpers import STATUS_ONLINE, STATUS_OFFLINE, format_number

logger = logging.getLogger(__name__)

# key, state topic suffix, name, unit, device_class, state_class
SENSOR_DEFINITIONS: List[Dict[str, Any]] = [
    {"key": "V_L1_N", "topic": "l1/v/n", "name": "L1 to N Voltage", "unit": "V", "device_class": "voltage"},
    {"key": "V_L2_N", "topic": "l2/v/n", "name": "L2 to N Voltage", "unit": "V", "device_class": "voltage"},
    {"key": "V_L3_N", "topic": "l3/v/n", "name": "L3 to N Voltage", "unit": "V", "device_class": "voltage"},
    {"key": "V_L1_L2", "topic": "l1/v/l2", "name": "L1 to L2 Voltage", "unit": "V", "device_class": "voltage"},
    {"key": "V_L2_L3", "topic": "l2/v/l3", "name": "L2 to L3 Voltage", "unit": "V", "device_class": "voltage"},
    {"key": "V_L3_L1", "topic": "l3/v/l1", "name": "L3 to L1 Voltage", "unit": "V", "device_class": "voltage"},
    {"key": "A_L1", "topic": "l1/i", "name": "L1 Current", "unit": "A", "device_class": "current"},
    {"key": "A_L2", "topic": "l2/i", "name": "L2 Current", "unit": "A", "device_class": "current"},
    {"key": "A_L3", "topic": "l3/i", "name": "L3 Current", "unit": "A", "device_class": "current"},
    {"key": "VA_L1", "topic": "l1/s", "name": "L1 Apparent Power", "unit": "VA", "device_class": "apparent_power"},
    {"key": "VA_L2", "topic": "l2/s", "name": "L2 Apparent Power", "unit": "VA", "device_class": "apparent_power"},
    {"key": "VA_L3", "topic": "l3/s", "name": "L3 Apparent Power", "unit": "VA", "device_class": "apparent_power"},
    {"key": "VAR_L1", "topic": "l1/q", "name": "L1 Reactive Power", "unit": "var", "device_class": "reactive_power"},
    {"key": "VAR_L2", "topic": "l2/q", "name": "L2 Reactive Power", "unit": "var", "device_class": "reactive_power"},
    {"key": "VAR_L3", "topic": "l3/q", "name": "L3 Reactive Power", "unit": "var", "device_class": "reactive_power"},
    {"key": "W_L1", "topic": "l1/w", "name": "L1 Active Power", "unit": "W", "device_class": "power"},
    {"key": "W_L2", "topic": "l2/w", "name": "L2 Active Power", "unit": "W", "device_class": "power"},
    {"key": "W_L3", "topic": "l3/w", "name": "L3 Active Power", "unit": "W", "device_class": "power"},
    {"key": "PF_L1", "topic": "l1/pf", "name": "L1 Power Factor", "device_class": "power_factor"},
    {"key": "PF_L2", "topic": "l2/pf", "name": "L2 Power Factor", "device_class": "power_factor"},
    {"key": "PF_L3", "topic": "l3/pf", "name": "L3 Power Factor", "device_class": "power_factor"},
    {"key": "V_L_N_AVG", "topic": "v/n/avg", "name": "Average L to N Voltage", "unit": "V", "device_class": "voltage"},
    {"key": "V_L_L_AVG", "topic": "v/l/avg", "name": "Average L to L Voltage", "unit": "V", "device_class": "voltage"},
    {"key": "PF_SUM", "topic": "pf/sum", "name": "Total Power Factor", "device_class": "power_factor"},
    {"key": "W_TOTAL", "topic": "w/total", "name": "Total Active Power", "unit": "W", "device_class": "power"},
    {"key": "VA_TOTAL", "topic": "va/total", "name": "Total Apparent Power", "unit": "VA", "device_class": "apparent_power"},
    {"key": "VAR_TOTAL", "topic": "var/total", "name": "Total Reactive Power", "unit": "var", "device_class": "reactive_power"},
    {"key": "KWH_IN_TOTAL", "topic": "kwh/total/in", "name": "Total Energy In", "unit": "kWh", "device_class": "energy", "state_class": "total_increasing"},
    {"key": "KVARH_IN_TOTAL", "topic": "kvarh/total/in", "name": "Total Reactive Energy In", "unit": "kvarh", "device_class": "reactive_energy", "state_class": "total_increasing"},
    {"key": "KWH_OUT_TOTAL", "topic": "kwh/total/out", "name": "Total Energy Out", "unit": "kWh", "device_class": "energy", "state_class": "total_increasing"},
    {"key": "KVARH_OUT_TOTAL", "topic": "kvarh/total/out", "name": "Total Reactive Energy Out", "unit": "kvarh", "device_class": "reactive_energy", "state_class": "total_increasing"},
    {"key": "DMD_W", "topic": "dmd/w", "name": "Demand Active Power", "unit": "W", "device_class": "power"},
    {"key": "DMD_W_MAX", "topic": "dmd/w/max", "name": "Maximum Demand Active Power", "unit": "W", "device_class": "power"},
    {"key": "HZ", "topic": "hz", "name": "Frequency", "unit": "Hz", "device_class": "frequency"},
]


class MqttService:
    """
    Publishes meter readings to an MQTT broker and receives override commands.

    This service runs in a dedicated thread and is responsible for:
    - Establishing and maintaining a connection to the MQTT broker, with
      exponential backoff between reconnection attempts.
    - Publishing every Nth measurement set (N = OVERSAMPLING_FACTOR) as one
      topic per quantity.
    - (If enabled) Publishing Home Assistant discovery payloads, refreshed
      every few hours.
    - Subscribing to the override topic and handing valid commands to the
      PowerOverrideArbiter.
    """
    def __init__(self, app_state: AppState, arbiter: Optional[PowerOverrideArbiter] = None):
        self.app_state = app_state
        self.arbiter = arbiter
        self.client: Optional[mqtt.Client] = None
        self._thread: Optional[threading.Thread] = None
        self.stop_event = threading.Event()
        self._is_connected = threading.Event()
        self._reconnect_delay = 1
        self._measurement_queue: "queue.Queue[MeasurementSet]" = queue.Queue(maxsize=5)
        self._sample_counter = 0
        self._last_discovery_time: Optional[float] = None

        self.base_topic = app_state.base_topic
        self.availability_topic = f"{self.base_topic}/status"
        self.override_topic = f"{self.base_topic}/{OVERRIDE_TOPIC_SUFFIX}"

    def start(self):
        """
        Starts the MQTT service thread.

        If MQTT is disabled in the configuration, this method returns immediately.
        """
        if not self.app_state.enable_mqtt:
            logger.warning("MQTT Service: Disabled by configuration. No data will be published.")
            return
        self._thread = threading.Thread(target=self._run, name=MQTT_SERVICE_THREAD_NAME, daemon=True)
        self._thread.start()

    def stop(self):
        """
        Gracefully stops the MQTT service.

        Publishes 'offline' to the availability topic, disconnects the client,
        and waits for the service thread to terminate.
        """
        if not self._thread or not self._thread.is_alive():
            return
        logger.info("MQTT Service: Stopping...")
        self.stop_event.set()
        if self.client and self._is_connected.is_set():
            try:
                self.client.publish(self.availability_topic, STATUS_OFFLINE, qos=1, retain=True)
                # Give a moment for messages to go out
                time.sleep(0.5)
            except (OSError, ValueError) as e:
                logger.error(f"MQTT Service: Error publishing offline status during stop: {e}")

        if self.client:
            self.client.disconnect()
        self._thread.join(timeout=5)
        logger.info("MQTT Service: Stopped.")

    def on_measurements(self, measurement_set: MeasurementSet) -> None:
        """
        Measurement listener registered with the meter poller.

        Forwards every OVERSAMPLING_FACTOR-th set to the publisher thread.
        Delivery is at-most-once: if the publisher is behind, the set is dropped.
        """
        self._sample_counter += 1
        if self._sample_counter % self.app_state.oversampling_factor != 0:
            return
        self._sample_counter = 0
        try:
            self._measurement_queue.put_nowait(measurement_set)
        except queue.Full:
            logger.debug("MQTT Service: Publish queue full, dropping measurement set.")

    def _setup_client(self):
        """
        Creates and configures the Paho MQTT client object.

        Sets up the client ID, credentials, a Last Will and Testament on the
        availability topic, and the connection and message callbacks.
        """
        client_id = self.app_state.mqtt_client_id or f"meter2mqtt_{self.app_state.identifier}_{uuid.uuid4().hex[:7]}"

        self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=client_id, protocol=mqtt.MQTTv311)
        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_message = self._on_message

        if self.app_state.mqtt_username:
            self.client.username_pw_set(self.app_state.mqtt_username, self.app_state.mqtt_password)

        self.client.will_set(self.availability_topic, STATUS_OFFLINE, qos=1, retain=True)

    def _run(self):
        """Main run loop for the MQTT service thread.

        Connects to the broker, then publishes measurement sets from the queue.
        If the connection is lost or fails, reconnection attempts are spaced
        out with exponential backoff.
        """
        self._setup_client()
        broker_host, port, use_tls = parse_broker_url(self.app_state.mqtt_broker_url)
        if use_tls:
            self.client.tls_set()

        while not self.stop_event.is_set():
            try:
                if not self._is_connected.is_set():
                    logger.info(f"MQTT Service: Attempting to connect to broker at {broker_host}:{port}...")
                    self.client.connect(broker_host, port, 60)
                    self.client.loop_start() # Start a background thread for network traffic
                    self._is_connected.wait(timeout=10) # Wait for on_connect callback

                if self._is_connected.is_set():
                    try:
                        measurement_set = self._measurement_queue.get(timeout=1.0)
                    except queue.Empty:
                        continue
                    self._publish_measurements(measurement_set)
                else:
                    self.client.loop_stop()
                    logger.warning(f"MQTT connection failed or was lost after waiting. Retrying in {self._reconnect_delay}s...")
                    self.stop_event.wait(self._reconnect_delay)
                    self._reconnect_delay = min(self._reconnect_delay * 2, 60)

            except (ConnectionRefusedError, OSError, TimeoutError) as e:
                logger.error(f"MQTT connection error: {e}. Retrying in {self._reconnect_delay}s...")
                self._is_connected.clear()
                self.client.loop_stop()
                self.app_state.mqtt_last_state = "Connection Error"
                self.stop_event.wait(self._reconnect_delay)
                self._reconnect_delay = min(self._reconnect_delay * 2, 60)
            except Exception as e:
                logger.error(f"MQTT Service: Unhandled exception in run loop: {e}", exc_info=True)
                self._is_connected.clear()
                self.client.loop_stop()
                self.stop_event.wait(5)

        self.client.loop_stop()

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        """Callback executed when the client connects to the MQTT broker."""
        if not reason_code.is_failure:
            self.app_state.mqtt_last_state = "connected"
            self._is_connected.set()
            self._reconnect_delay = 1
            self._last_discovery_time = None
            logger.info("Connected to MQTT broker")
            client.publish(self.availability_topic, STATUS_ONLINE, qos=1, retain=True)
            if self.arbiter is not None and self.app_state.enable_override_topic:
                result, _ = client.subscribe(self.override_topic, qos=0)
                if result == mqtt.MQTT_ERR_SUCCESS:
                    logger.info(f"Subscribed to marstek shelly emu override topic: {self.override_topic}")
                else:
                    logger.error(f"Failed to subscribe to {self.override_topic} (rc={result})")
        else:
            self.app_state.mqtt_last_state = f"Failed ({reason_code})"
            self._is_connected.clear()
            logger.error(f"MQTT Service: Failed to connect. Reason: {reason_code}")

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None):
        """Callback executed when the client disconnects from the MQTT broker."""
        self.app_state.mqtt_last_state = "Disconnected"
        self._is_connected.clear()
        if reason_code.is_failure:
            logger.warning(f"MQTT Service: Unexpectedly disconnected from broker. Reason: {reason_code}. Reconnection will be attempted.")

    def _on_message(self, client, userdata, message):
        if message.topic != self.override_topic or self.arbiter is None:
            return
        try:
            value = parse_override_command(message.payload)
        except InvalidControlValueError as e:
            logger.warning(f"Received invalid override value {message.payload!r}: {e}")
            return
        self.arbiter.set_override(value)

    def _publish_measurements(self, measurement_set: MeasurementSet):
        """Publishes one reading per quantity, preceded by discovery if due."""
        if not self.client or not self._is_connected.is_set():
            return
        if self.app_state.enable_ha_discovery:
            self._ensure_discovery()

        for params in SENSOR_DEFINITIONS:
            value = measurement_set.get(params["key"])
            if value is None:
                continue
            self.client.publish(f"{self.base_topic}/{params['topic']}", format_number(value), qos=0, retain=False)
        logger.debug("Published measurement set to MQTT.")

    def _device_info(self) -> Dict[str, Any]:
        identifier = self.app_state.identifier
        return {
            "manufacturer": "Carlo Gavazzi",
            "model": "EM24",
            "name": f"Carlo Gavazzi EM24 {identifier}",
            "identifiers": [f"meter2mqtt_{identifier}"],
            "sw_version": self.app_state.version,
        }

    def build_discovery_payloads(self) -> Dict[str, Dict[str, Any]]:
        """
        Builds the Home Assistant discovery configuration for every sensor.

        Returns:
            A dictionary of config topic -> payload.
        """
        identifier = self.app_state.identifier
        discovery_topic = f"{self.app_state.ha_discovery_prefix}/sensor/meter2mqtt_{identifier}"
        device = self._device_info()
        payloads = {}
        for params in SENSOR_DEFINITIONS:
            slug = params["topic"].replace("/", "_")
            object_id = f"meter2mqtt_{identifier}_{slug}"
            payload = {
                "state_topic": f"{self.base_topic}/{params['topic']}",
                "name": params["name"],
                "device_class": params["device_class"],
                "state_class": params.get("state_class", "measurement"),
                "object_id": object_id,
                "unique_id": object_id,
                "expire_after": HA_EXPIRE_AFTER_SECONDS,
                "enabled_by_default": True,
                "device": device,
            }
            if "unit" in params:
                payload["unit_of_measurement"] = params["unit"]
            payloads[f"{discovery_topic}/{slug}/config"] = payload
        return payloads

    def _ensure_discovery(self):
        """(Re-)publishes the discovery configs if they have not been sent in the last few hours."""
        now = time.monotonic()
        if self._last_discovery_time is not None and now - self._last_discovery_time <= HA_DISCOVERY_REFRESH_SECONDS:
            return
        logger.info("Publishing Home Assistant discovery configuration...")
        for topic, payload in self.build_discovery_payloads().items():
            self.client.publish(topic, json.dumps(payload), qos=1, retain=True)
        self._last_discovery_time = now
