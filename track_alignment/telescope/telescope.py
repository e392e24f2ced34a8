import logging
import os
from collections import OrderedDict
from inspect import isclass
import importlib

import numpy as np
from yaml import safe_load, safe_dump

from track_alignment.telescope.dut import Dut


def open_configuration(configuration):
    ''' Returns a configuration dict from a file name, a YAML string, an open file or a dict.
    '''
    configuration_dict = {}
    if not configuration:
        pass
    elif isinstance(configuration, str):  # parse the first YAML document in a stream
        if os.path.isfile(os.path.abspath(configuration)):
            logging.info('Loading configuration from file %s', os.path.abspath(configuration))
            with open(os.path.abspath(configuration), mode='r') as f:
                configuration_dict.update(safe_load(f))
        else:  # YAML string
            configuration_dict.update(safe_load(configuration))
    elif hasattr(configuration, 'read'):  # parse the first YAML document in a stream
        logging.info('Loading configuration from stream %s', getattr(configuration, 'name', ''))
        configuration_dict.update(safe_load(configuration))
    elif isinstance(configuration, (dict, OrderedDict)):  # conf is already a dict
        configuration_dict.update(configuration)
    else:
        raise ValueError("Configuration cannot be parsed.")
    return configuration_dict


def update_dut_transform(dut, context, transform):
    ''' Default transform updater: writes a new placement into a DUT.

    Parameters
    ----------
    dut : Dut
        The detector element to move.
    context : object
        Geometry context, not used by the telescope geometry.
    transform : array
        4x4 local-to-global rigid transformation matrix.

    Returns
    -------
    True on success, False if the transform is not a rigid transformation.
    '''
    try:
        dut.set_transform(transform)
    except ValueError as e:
        logging.warning('Cannot update placement of %s: %s', dut.name, e)
        return False
    return True


class Telescope(object):
    ''' Set of DUTs keyed by an integer DUT ID.

    Iteration is ordered by DUT ID.
    '''

    def __init__(self, configuration_file=None):
        self.dut = {}
        self.configuration_file = None
        if configuration_file is not None:
            self.load_configuration(configuration_file)

    def __len__(self):
        return len(self.dut)

    def __getitem__(self, key):
        return self.dut[key]

    def __setitem__(self, key, value):
        if not isinstance(value, Dut):
            raise ValueError("Must be DUT.")
        self.dut[key] = value

    def __iter__(self):
        for sorted_key in sorted(self.dut.keys()):
            yield self.dut[sorted_key]

    def __str__(self):
        return '\n'.join(str(item) for item in self)

    @property
    def dut_names(self):
        return [item.name for item in self]

    @property
    def dut_ids(self):
        return sorted(self.dut.keys())

    @property
    def z_sorted_dut_ids(self):
        ''' DUT IDs sorted by the z position of the plane centers. '''
        return sorted(self.dut.keys(), key=lambda dut_id: self.dut[dut_id].translation_z)

    def alignable_duts(self, select_duts=None):
        ''' DUTs to be aligned.

        Parameters
        ----------
        select_duts : iterable
            DUT IDs. If None, all DUTs are returned.

        Returns
        -------
        List of DUTs in DUT ID order.
        '''
        if select_duts is None:
            return list(self)
        for dut_id in select_duts:
            if dut_id not in self.dut:
                raise ValueError("Parameter \"select_duts\" contains unknown DUT ID %d." % dut_id)
        return [self.dut[dut_id] for dut_id in sorted(set(select_duts))]

    def transforms(self):
        ''' 4x4 transformation matrices of all DUTs, keyed by DUT ID. '''
        return {dut_id: self.dut[dut_id].transform for dut_id in self.dut_ids}

    def copy(self):
        ''' Independent copy of the telescope geometry. '''
        telescope = Telescope()
        for dut_id, dut in self.dut.items():
            telescope[dut_id] = dut.__class__.from_dut(dut)
        return telescope

    def load_configuration(self, configuration_file=None):
        if configuration_file:
            self.configuration_file = configuration_file
        else:
            configuration_file = self.configuration_file

        configuration = open_configuration(configuration_file)
        if not configuration:
            raise ValueError("No valid configuration given.")

        if "TELESCOPE" in configuration and configuration["TELESCOPE"] and "DUT" in configuration["TELESCOPE"]:
            for dut_id, dut_configuration in configuration["TELESCOPE"]["DUT"].items():
                dut_configuration = dict(dut_configuration)
                dut_type = dut_configuration.pop("dut_type", "RectangularPixelDut")
                self.add_dut(dut_type=dut_type, dut_id=dut_id, **dut_configuration)

    def save_configuration(self, configuration_file=None, keep_others=False):
        if configuration_file:
            self.configuration_file = configuration_file
        else:
            configuration_file = self.configuration_file

        if configuration_file:
            if keep_others and os.path.isfile(os.path.abspath(configuration_file)):
                with open(os.path.abspath(configuration_file), mode='r') as f:
                    configuration = safe_load(f)
            else:
                configuration = {}
            if 'TELESCOPE' not in configuration or not configuration['TELESCOPE']:
                configuration["TELESCOPE"] = {}
            # overwrite all existing DUTs
            configuration["TELESCOPE"]["DUT"] = {}
            for dut_id, dut in self.dut.items():
                dut_configuration = {name: getattr(dut, name) for name in dut.dut_attributes}
                dut_configuration["dut_type"] = dut.__class__.__name__
                configuration["TELESCOPE"]["DUT"][dut_id] = dut_configuration
            with open(configuration_file, mode='w') as f:
                safe_dump(configuration, f, default_flow_style=False)
        else:
            raise ValueError("No valid configuration file given.")

    def add_dut(self, dut_type, dut_id, **kwargs):
        if not isinstance(dut_id, (int, np.integer)):
            raise ValueError("DUT ID has to be an integer.")
        if "name" not in kwargs:
            kwargs["name"] = "DUT%d" % dut_id
        if isinstance(dut_type, str):
            m = importlib.import_module("track_alignment.telescope.dut")
            # get the class, will raise AttributeError if class cannot be found
            c = getattr(m, dut_type)
            self.dut[dut_id] = c(**kwargs)
        elif isclass(dut_type):
            self.dut[dut_id] = dut_type(**kwargs)
        else:
            raise ValueError("Unknown DUT type.")
        return self.dut[dut_id]
