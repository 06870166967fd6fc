from trycp.config.config import apply, package_config_dir
from trycp.support.mixins import CommonEqualityMixin, StringerMixin

# the name of the configuration files, and the section holding the settings
config_name = 'trycp'


class Settings(CommonEqualityMixin, StringerMixin):
    """
    Tunable values for talking to TryCP servers. Timeouts and intervals are in seconds.
    """

    def __init__(self, request_timeout=60.0, zome_call_timeout=60.0, connect_timeout=5.0,
                 app_port_min=30000, app_port_max=40000, consistency_timeout=60.0,
                 consistency_poll_interval=0.5, default_partial_config='', log_level='error'):
        self.request_timeout = request_timeout
        self.zome_call_timeout = zome_call_timeout
        self.connect_timeout = connect_timeout
        self.app_port_min = app_port_min
        self.app_port_max = app_port_max
        self.consistency_timeout = consistency_timeout
        self.consistency_poll_interval = consistency_poll_interval
        self.default_partial_config = default_partial_config
        self.log_level = log_level

    @property
    def app_port_range(self):
        return range(self.app_port_min, self.app_port_max + 1)


def load_settings(directory=package_config_dir, user_file=None) -> Settings:
    """
    Loads the settings from the trycp configuration files.
    :raises configobj.ConfigObjError: if the configuration is invalid.
    """
    settings = apply(Settings(), config_name, config_name, directory, user_file)
    if settings.app_port_min > settings.app_port_max:
        raise ValueError("app port range %d-%d is empty" % (settings.app_port_min, settings.app_port_max))
    return settings
