"""
Binary persistence of a whole fitting session.

Layout, in order, with no version tag:
    field record -> box record -> bool flag -> box collection (if flag set)

Loading is transactional: the session is rebuilt in a temporary object and
only swapped in once the whole stream has been read.
"""
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Optional, Union

from binary_io import BinaryReader, BinaryWriter
from box_collection import BoxCollection
from fit_box import Box3D
from fitting_errors import SerializationError
from sdf_grid import SignedDistanceField

logger = logging.getLogger(__name__)


@dataclass
class FittingSession:
    """The field, the box being edited and optional batch solutions."""
    field: SignedDistanceField
    box: Box3D
    solutions: Optional[BoxCollection] = None

    def write(self, stream: BinaryIO):
        self.field.write(stream)
        self.box.write(stream)
        BinaryWriter(stream).write_bool(self.solutions is not None)
        if self.solutions is not None:
            self.solutions.write(stream)

    @classmethod
    def read(cls, stream: BinaryIO) -> "FittingSession":
        field = SignedDistanceField.read(stream)
        box = Box3D.read(stream)
        solutions = None
        if BinaryReader(stream).read_bool():
            solutions = BoxCollection.read(stream)
        return cls(field=field, box=box, solutions=solutions)

    def deserialize(self, stream: BinaryIO) -> bool:
        """Replace this session with the stream's; untouched on failure."""
        try:
            loaded = FittingSession.read(stream)
        except SerializationError as e:
            logger.warning("Session deserialization failed: %s", e)
            return False
        self.field = loaded.field
        self.box = loaded.box
        self.solutions = loaded.solutions
        return True

    def save(self, path: Union[str, Path]):
        path = Path(path)
        with open(path, "wb") as f:
            self.write(f)
        logger.info("Saved session to %s", path)

    @classmethod
    def load(cls, path: Union[str, Path]) -> "FittingSession":
        with open(path, "rb") as f:
            return cls.read(f)
