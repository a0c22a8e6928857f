# core/plugin_manager.py
import logging
import inspect
from typing import Any, Dict, Optional

from plugins.plugin_interface import DevicePlugin
from core.app_state import AppState

logger = logging.getLogger(__name__)

def build_plugin_config(app_state: AppState) -> Dict[str, Any]:
    """
    Assembles the connection settings handed to the meter plugin.

    Values from the optional `[PLUGIN]` section of config.ini are applied on
    top of the GENERAL settings, so plugin-specific keys can be added without
    touching the core loader.
    """
    plugin_config: Dict[str, Any] = {
        "tcp_host": app_state.poll_ip,
        "tcp_port": app_state.poll_port,
        "slave_address": app_state.poll_slave_id,
        "modbus_timeout_seconds": app_state.modbus_timeout_seconds,
    }
    if app_state.config is not None and app_state.config.has_section("PLUGIN"):
        plugin_config.update(dict(app_state.config.items("PLUGIN")))
    return plugin_config

def load_plugin_instance(plugin_type_full: str, instance_name: str, app_state: AppState) -> Optional[DevicePlugin]:
    """
    Loads the meter plugin based on its type string and config.

    The type string follows a 'category.module_name' format (e.g.
    "meter.em24_modbus"); the module `plugins.<category>.<module_name>_plugin`
    is imported and its first concrete `DevicePlugin` subclass instantiated.

    Returns:
        Optional[DevicePlugin]: An instance of the loaded plugin if successful, otherwise None.
    """
    try:
        if '.' not in plugin_type_full:
            logger.error(f"Invalid plugin_type format '{plugin_type_full}' for instance '{instance_name}'. Expected 'category.module_name'.")
            return None

        category, module_name = plugin_type_full.split('.', 1)
        mod_path = f"plugins.{category}.{module_name}_plugin"

        plug_mod = __import__(mod_path, fromlist=[module_name])

        found_class = None
        for item_name in dir(plug_mod):
            item_obj = getattr(plug_mod, item_name)
            if (isinstance(item_obj, type) and
                    issubclass(item_obj, DevicePlugin) and
                    item_obj is not DevicePlugin and
                    not inspect.isabstract(item_obj)):
                found_class = item_obj
                logger.debug(f"Found concrete plugin class '{found_class.__name__}' in module {mod_path}.")
                break

        if not found_class:
            logger.error(f"No valid, non-abstract DevicePlugin subclass found in module {mod_path}.")
            return None

        plugin_config = build_plugin_config(app_state)
        plugin_config["_instance_name"] = instance_name
        plugin_config["_plugin_category_from_type_string"] = category

        logger.info(f"Instantiating plugin '{instance_name}' (Class: {found_class.__name__})")
        return found_class(instance_name=instance_name, plugin_specific_config=plugin_config, main_logger=logging.getLogger(f"{mod_path}.{instance_name}"))

    except ImportError as e:
        logger.error(f"Cannot import plugin module for type '{plugin_type_full}': {e}", exc_info=True)
    except Exception as e:
        logger.error(f"Unexpected error loading plugin instance '{instance_name}': {e}", exc_info=True)
    return None
