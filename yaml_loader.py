import logging
import os
import yaml
from pathlib import Path

logger = logging.getLogger("yaml_loader")


def load_yaml_config(filepath: Path) -> dict:
    """
    Loads configuration data from a YAML file.

    Args:
        filepath (Path): The path object pointing to the YAML configuration file.

    Returns:
        dict: The loaded configuration as a dictionary.

    Raises:
        FileNotFoundError: If the config file does not exist.
        yaml.YAMLError: If there is an issue parsing the YAML content.
    """
    if not filepath.exists():
        raise FileNotFoundError(f"Configuration file not found at: {filepath}")

    try:
        with open(filepath, 'r') as f:
            config_data = yaml.safe_load(f)
        return config_data if config_data is not None else {}
    except yaml.YAMLError as e:
        logger.error(f"Error parsing YAML file {filepath}: {e}")
        raise
    except IOError as e:
        logger.error(f"Error reading config file {filepath}: {e}")
        raise


def save_yaml_config(filepath: Path, data: dict):
    """
    Writes configuration data to a YAML file.

    The file is written to a sibling temp file first and then moved into
    place, so a reader never sees a half-written configuration.

    Args:
        filepath (Path): Destination of the YAML configuration file.
        data (dict): Configuration to write.
    """
    filepath.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = filepath.with_suffix(filepath.suffix + ".tmp")

    try:
        with open(tmp_path, 'w') as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
        os.replace(tmp_path, filepath)
    except (IOError, yaml.YAMLError) as e:
        logger.error(f"Error writing config file {filepath}: {e}")
        raise
