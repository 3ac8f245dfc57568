import enum


class StrEnum(str, enum.Enum):
    """ Enum whose members compare equal to their string values, handy for config files. """

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls, value: str) -> 'StrEnum':
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"Unknown {cls.__name__} tag {value!r}, expected one of {[m.value for m in cls]}")
