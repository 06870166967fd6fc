import logging
import os
import platform

from configobj import ConfigObj, ConfigObjError, Section, flatten_errors
from configobj.validate import Validator

logger = logging.getLogger(__name__)

# The default extension for configuration files
config_extension = '.cfg'

# the flavor holding the types and defaults that configurations are validated against
schema_flavor = 'schema'

# the directory holding the configuration files shipped with the package
package_config_dir = os.path.dirname(__file__)


def config_flavor(name, flavor=None):
    """
    >>> config_flavor('trycp', 'default')
    'trycp.default'
    >>> config_flavor('trycp')
    'trycp'
    """
    return name if not flavor else name + '.' + flavor


def config_filename(name, directory):
    """
    Determines the location of a named config file in the given directory.
    """
    return os.path.join(directory, name + config_extension)


def load_config_file_base(file, must_exist=True, schema=False) -> ConfigObj:
    """
    Loads a configuration file
    :param file:        The configuration file to load
    :param must_exist:  when True, the file must exist or an exception is thrown.
    :param schema:      when True, the file is a schema. Values such as integer(min=1, max=10) are kept whole
                        rather than split into lists.
    :return: The ConfigObj instance for the file.
    """
    try:
        if not must_exist and not os.path.exists(file):
            return ConfigObj(_inspec=schema)
        if schema:
            return ConfigObj(file, file_error=must_exist, _inspec=True)
        return ConfigObj(file, interpolation='Template', file_error=must_exist)
    except ConfigObjError as e:
        raise type(e)(str(e) + ' at ' + file)


def config_flavor_file(name, directory, flavor=None) -> ConfigObj:
    """
    Loads a specialization of a config file. The configuration file is expected to be named
    after the base, followed by a period and then the specialization, if the specialization is given,
    otherwise just the base name. A missing file gives an empty configuration. The "schema" flavor is loaded
    as a configspec.
    """
    return load_config_file_base(config_filename(config_flavor(name, flavor), directory), False,
                                 flavor == schema_flavor)


def map_os_name(name):
    """
    >>> map_os_name('Windows')
    'windows'
    >>> map_os_name("Darwin")
    'osx'
    """
    name = name.lower()
    if name == 'darwin':
        name = 'osx'
    return name


def os_name():
    return map_os_name(platform.system())


def user_config_file(name):
    return os.path.expanduser('~/' + name + config_extension)


def load_config(name, directory=package_config_dir, user_file=None):
    """
    Loads all the configuration files that relate to the given name.
    Configurations are loaded in this order, later files overriding earlier ones:
    - the default specialization
    - the platform specialization
    - the user override, from the home directory unless user_file is given
    - the base configuration
    The configurations are flattened into a single configuration, and then validated
    against the "schema" specialization, which also converts the values to their declared types.
    :param directory: the location of the configuration files
    :raises ConfigObjError: if the merged configuration fails validation.
    """
    local_config = config_flavor_file(name, directory)
    default_config = config_flavor_file(name, directory, 'default')
    platform_config = config_flavor_file(name, directory, os_name())
    user_config = load_config_file_base(user_file or user_config_file(name), must_exist=False)
    config = ConfigObj()
    config.merge(default_config)
    config.merge(platform_config)
    config.merge(user_config)
    config.merge(local_config)

    config.configspec = config_flavor_file(name, directory, schema_flavor)
    result = config.validate(Validator(), preserve_errors=True)
    if result is not True:
        failures = ['.'.join(sections + [key or '']) for sections, key, _ in flatten_errors(config, result)]
        raise ConfigObjError("the config file %s failed validation: %s" % (name, ', '.join(failures)))
    return config


def fetch_conf_path(conf: Section, path):
    """
    Retrieves the named configuration section
    :param conf:   The root configuration
    :param path:   An iterable that lists the names of the sections to resolve
    :return: The configuration section identified by the path, or None
    """
    for p in path:
        conf = conf.get(p, None)
        if conf is None:
            return None
    return conf


def apply_conf(conf: Section, target):
    """
    Applies the values in a configuration section to a target object, by setting any attributes with the
    same name. Values with no matching attribute are ignored.
    """
    for k, v in conf.items():
        if hasattr(target, k):
            setattr(target, k, v)
        else:
            logger.debug("ignoring unknown setting %s" % k)


def apply(target, config_path, config_name, directory=package_config_dir, user_file=None):
    """
    Applies defined values from a path to a given target object.
    :param target: The object to receive the values defined
    :param config_path: The path that is the prefix to the values defined. The path is split on '.'.
    :param config_name: The configuration file to load.
    :param directory: the directory containing the config files
    :return: the target
    """
    conf = fetch_conf_path(load_config(config_name, directory, user_file), config_path.split('.'))
    if conf:
        apply_conf(conf, target)
    return target
