import json, shutil
from pathlib import Path
from DaemonErrors import ConfigurationError
from ServerConfiguration import ServerConfiguration


def default_config_path(base_path=None):
    """
    config/config.json of the source checkout when it has a config directory, otherwise
    config/config.json below the working directory (the installed console script).
    """
    if base_path is None:
        base_path = Path(__file__).resolve().parent.parent
    if (Path(base_path) / 'config').is_dir():
        return Path(base_path) / 'config' / 'config.json'
    return Path.cwd() / 'config' / 'config.json'


class ConfigLoader:
    _instance = None  # Class attribute to store the singleton instance

    def __new__(cls, filepath=None):
        """ Override the __new__ method to ensure only one instance exists. """
        if cls._instance is None:
            instance = super(ConfigLoader, cls).__new__(cls)
            instance.filepath = Path(filepath) if filepath is not None else default_config_path()
            instance.config = instance.load_config(instance.filepath)
            cls._instance = instance
        return cls._instance

    @classmethod
    def reset(cls):
        """ Forget the loaded instance so the next call reads the file again. """
        cls._instance = None

    def load_config(self, filepath):
        """ Load the JSON config file and clean it. A missing file yields an empty config. """
        if not filepath.exists():
            sample_path = filepath.parent / 'config.json.sample'
            if sample_path.exists():
                try:
                    shutil.copy(sample_path, filepath)
                except OSError as e:
                    raise ConfigurationError(f"Failed to copy sample configuration file to {filepath}: {e}")
            else:
                self.found = False
                return {}
        self.found = True
        try:
            with open(filepath, 'r') as file:
                config = json.load(file)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Error decoding the configuration file {filepath}: {e}")
        # Clean out any comments from the configuration
        return self.remove_comments(config)

    def remove_comments(self, config):
        """ Recursively remove __comments__ keys from the configuration dictionary. """
        if isinstance(config, dict):
            config.pop('__comments__', None)
            for key, value in list(config.items()):
                config[key] = self.remove_comments(value)
        elif isinstance(config, list):
            return [self.remove_comments(item) for item in config]
        return config

    def get_configuration(self):
        """ Retrieve the general (logging) configuration. """
        return self.config.get('configuration', {})

    def get_daemon_settings(self):
        """ Retrieve the raw daemon section. """
        return self.config.get('daemon', {})

    def get_server_configuration(self):
        """ Build the validated, immutable server configuration. """
        return ServerConfiguration.from_mapping(self.get_daemon_settings())
