from meegbem.geometry.mesh import Mesh, Triangle, Vertex, solid_angle
from meegbem.geometry.geometry import Boundary, Domain, Geometry, Interface, MeshPair, OrientedMesh
from meegbem.geometry.shapes import icosphere, nested_spheres

__all__ = [
    "Vertex",
    "Triangle",
    "Mesh",
    "solid_angle",
    "OrientedMesh",
    "Interface",
    "Boundary",
    "Domain",
    "MeshPair",
    "Geometry",
    "icosphere",
    "nested_spheres",
]
