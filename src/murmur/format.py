from typing import NamedTuple

from rich.pretty import pretty_repr


class Pretty(NamedTuple):
  value: object

  def __str__(self) -> str:
    return pretty_repr(self.value, max_string=80)


class Unit(NamedTuple):
  value: float


class Seconds(Unit):
  def __str__(self) -> str:
    return f"{self.value:.1f}s"


class Milliseconds(Unit):
  def __str__(self) -> str:
    return f"{self.value:.0f}ms"
