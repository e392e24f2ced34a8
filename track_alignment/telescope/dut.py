import inspect

import numpy as np

from track_alignment.tools import geometry_utils


class Dut(object):
    ''' Planar detector element with a rigid placement.

    The placement (translation and rotation) is the alignable quantity. The
    DUT object itself is the surface identity used by the track states and
    by the alignment.
    '''

    # List of member variables that are allowed to be changed/set (e.g., during initialization).
    dut_attributes = ["name", "translation_x", "translation_y", "translation_z", "rotation_alpha", "rotation_beta", "rotation_gamma", "material_budget"]
    # Selects the residual derivative used by the alignment
    surface_kind = "plane"

    def __init__(self, name, translation_x, translation_y, translation_z, rotation_alpha, rotation_beta, rotation_gamma, material_budget=None):
        self.name = name  # string
        self.translation_x = translation_x  # in um
        self.translation_y = translation_y  # in um
        self.translation_z = translation_z  # in um
        self.rotation_alpha = rotation_alpha  # in rad
        self.rotation_beta = rotation_beta  # in rad
        self.rotation_gamma = rotation_gamma  # in rad
        self.material_budget = 0.0 if material_budget is None else material_budget  # thickness devided by the radiation length

    def __setattr__(self, name, value):
        ''' Only allow the change of attributes that are listed in the class attribute 'dut_attributes' or during init.
        '''
        curframe = inspect.currentframe()
        calframe = inspect.getouterframes(curframe, 2)
        init = False
        for item in calframe:
            if "__init__" in item[3] and item[4]:
                for function in item[4]:
                    if self.__class__.__name__ in function:
                        init = True
                        break
        if (name[0] == '_' and name[1:] in self.dut_attributes) or name in self.dut_attributes or init:
            super(Dut, self).__setattr__(name, value)
        else:
            raise ValueError("Attribute '%s' not allowed to be changed." % name)

    def __str__(self):
        return ("DUT %s: " % self.__class__.__name__) + ", ".join([(name + ": " + str(getattr(self, name))) for name in self.dut_attributes])

    @property
    def name(self):
        return self._name

    @name.setter
    def name(self, name):
        self._name = str(name)

    @property
    def translation_x(self):
        return self._translation_x

    @translation_x.setter
    def translation_x(self, translation_x):
        self._translation_x = float(translation_x)

    @property
    def translation_y(self):
        return self._translation_y

    @translation_y.setter
    def translation_y(self, translation_y):
        self._translation_y = float(translation_y)

    @property
    def translation_z(self):
        return self._translation_z

    @translation_z.setter
    def translation_z(self, translation_z):
        self._translation_z = float(translation_z)

    @property
    def rotation_alpha(self):
        return self._rotation_alpha

    @rotation_alpha.setter
    def rotation_alpha(self, rotation_alpha):
        self._rotation_alpha = float(rotation_alpha)

    @property
    def rotation_beta(self):
        return self._rotation_beta

    @rotation_beta.setter
    def rotation_beta(self, rotation_beta):
        self._rotation_beta = float(rotation_beta)

    @property
    def rotation_gamma(self):
        return self._rotation_gamma

    @rotation_gamma.setter
    def rotation_gamma(self, rotation_gamma):
        self._rotation_gamma = float(rotation_gamma)

    @property
    def material_budget(self):
        return self._material_budget

    @material_budget.setter
    def material_budget(self, material_budget):
        self._material_budget = float(material_budget)

    # Placement
    @property
    def center(self):
        return np.array([self.translation_x, self.translation_y, self.translation_z], dtype=np.float64)

    @property
    def rotation_matrix(self):
        ''' Local-to-global rotation, columns are the local u, v, w axes. '''
        return geometry_utils.rotation_matrix(alpha=self.rotation_alpha, beta=self.rotation_beta, gamma=self.rotation_gamma)

    @property
    def normal(self):
        return self.rotation_matrix[:, 2]

    @property
    def transform(self):
        ''' 4x4 local-to-global transformation matrix. '''
        return geometry_utils.local_to_global_transformation_matrix(
            x=self.translation_x,
            y=self.translation_y,
            z=self.translation_z,
            alpha=self.rotation_alpha,
            beta=self.rotation_beta,
            gamma=self.rotation_gamma)

    def set_transform(self, transform):
        ''' Sets the placement from a 4x4 rigid transformation matrix.

        Raises ValueError if the matrix is not a rigid transformation.
        '''
        x, y, z, alpha, beta, gamma = geometry_utils.transformation_matrix_to_parameters(transform)
        self.translation_x = x
        self.translation_y = y
        self.translation_z = z
        self.rotation_alpha = alpha
        self.rotation_beta = beta
        self.rotation_gamma = gamma

    @classmethod
    def from_dut(cls, dut, **kwargs):
        ''' Get new DUT from existing DUT. Copy all properties to new DUT.
        '''
        init_variables = list(set(cls.dut_attributes) & set(dut.dut_attributes))
        init_dict = {key: getattr(dut, key) for key in init_variables}
        init_dict.update(kwargs)
        return cls(**init_dict)

    def local_to_global_position(self, x, y, z=None):
        ''' Transform local position to global position.
        '''
        x = np.atleast_1d(np.array(x, dtype=np.float64))
        y = np.atleast_1d(np.array(y, dtype=np.float64))
        z = np.zeros_like(x) if z is None else np.atleast_1d(np.array(z, dtype=np.float64))
        return geometry_utils.apply_transformation_matrix(x=x, y=y, z=z, transformation_matrix=self.transform)

    def global_to_local_position(self, x, y, z):
        ''' Transform global position to local position.
        '''
        x = np.atleast_1d(np.array(x, dtype=np.float64))
        y = np.atleast_1d(np.array(y, dtype=np.float64))
        z = np.atleast_1d(np.array(z, dtype=np.float64))
        transformation_matrix = geometry_utils.global_to_local_transformation_matrix(
            x=self.translation_x,
            y=self.translation_y,
            z=self.translation_z,
            alpha=self.rotation_alpha,
            beta=self.rotation_beta,
            gamma=self.rotation_gamma)
        return geometry_utils.apply_transformation_matrix(x=x, y=y, z=z, transformation_matrix=transformation_matrix)

    def line_intersections(self, line_origins, line_directions):
        ''' Global intersection points of lines with the DUT plane (nan if parallel).
        '''
        normal = self.normal
        if normal[2] < 0:
            normal = -normal
        return geometry_utils.get_line_intersections_with_plane(
            line_origins=np.asarray(line_origins, dtype=np.float64),
            line_directions=np.asarray(line_directions, dtype=np.float64),
            position_plane=self.center,
            normal_plane=normal)


class RectangularPixelDut(Dut):
    ''' DUT with rectangular pixels.
    '''
    dut_attributes = ["name", "translation_x", "translation_y", "translation_z", "rotation_alpha", "rotation_beta", "rotation_gamma", "material_budget", "column_size", "row_size", "n_columns", "n_rows"]

    def __init__(self, name, translation_x, translation_y, translation_z, rotation_alpha, rotation_beta, rotation_gamma, column_size, row_size, n_columns, n_rows, material_budget=None):
        super(RectangularPixelDut, self).__init__(name=name, material_budget=material_budget, translation_x=translation_x, translation_y=translation_y, translation_z=translation_z, rotation_alpha=rotation_alpha, rotation_beta=rotation_beta, rotation_gamma=rotation_gamma)
        self.column_size = column_size
        self.row_size = row_size
        self.n_columns = n_columns
        self.n_rows = n_rows

    @property
    def column_size(self):
        return self._column_size

    @column_size.setter
    def column_size(self, column_size):
        self._column_size = float(column_size)

    @property
    def row_size(self):
        return self._row_size

    @row_size.setter
    def row_size(self, row_size):
        self._row_size = float(row_size)

    @property
    def n_columns(self):
        return self._n_columns

    @n_columns.setter
    def n_columns(self, n_columns):
        self._n_columns = int(n_columns)

    @property
    def n_rows(self):
        return self._n_rows

    @n_rows.setter
    def n_rows(self, n_rows):
        self._n_rows = int(n_rows)


class FEI4(RectangularPixelDut):
    dut_attributes = ["name", "translation_x", "translation_y", "translation_z", "rotation_alpha", "rotation_beta", "rotation_gamma", "material_budget"]

    def __init__(self, name, translation_x, translation_y, translation_z, rotation_alpha, rotation_beta, rotation_gamma, material_budget=None):
        super(FEI4, self).__init__(name=name, translation_x=translation_x, translation_y=translation_y, translation_z=translation_z, rotation_alpha=rotation_alpha, rotation_beta=rotation_beta, rotation_gamma=rotation_gamma, material_budget=material_budget, column_size=250.0, row_size=50.0, n_columns=80, n_rows=336)


class Mimosa26(RectangularPixelDut):
    dut_attributes = ["name", "translation_x", "translation_y", "translation_z", "rotation_alpha", "rotation_beta", "rotation_gamma", "material_budget"]

    def __init__(self, name, translation_x, translation_y, translation_z, rotation_alpha, rotation_beta, rotation_gamma, material_budget=None):
        super(Mimosa26, self).__init__(name=name, translation_x=translation_x, translation_y=translation_y, translation_z=translation_z, rotation_alpha=rotation_alpha, rotation_beta=rotation_beta, rotation_gamma=rotation_gamma, material_budget=material_budget, column_size=18.4, row_size=18.4, n_columns=1152, n_rows=576)
