from typing import Union, Protocol, Any, SupportsIndex, Iterator
from pathlib import Path

import numpy as np
import numpy.typing as npt

DOUBLE_ARRAY = npt.NDArray[np.float64]
FLOAT_ARRAY = npt.NDArray[np.float32]
UINT8_ARRAY = npt.NDArray[np.uint8]
BOOL_ARRAY = npt.NDArray[np.bool_]
INDEX_ARRAY = npt.NDArray[np.int64]
ARRAY_LIKE = npt.ArrayLike

PATH = Union[Path, str]


class BasicSequenceProtocol(Protocol):

    def __getitem__(self, key: SupportsIndex, /) -> Any: ...

    def __iter__(self) -> Iterator[Any]: ...

    def __len__(self) -> int: ...

