"""
Models for the parsed build descriptor (Dockerfile).
"""
from typing import Dict, List
from pydantic import BaseModel


class Instruction(BaseModel):
    """
    Represents a single instruction in a Dockerfile.
    """
    instruction: str
    arguments: List[str]
    flags: Dict[str, str] = {}
    raw: str
    line: int = 0
    exec_form: bool = False


class DockerfileAST(BaseModel):
    """
    The ordered instructions of one build descriptor.
    """
    instructions: List[Instruction] = []

    def of(self, name: str) -> List[Instruction]:
        return [i for i in self.instructions if i.instruction == name]
