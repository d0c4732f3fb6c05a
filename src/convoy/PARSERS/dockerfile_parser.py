"""
Parsers for Dockerfiles, extracting instructions, flags and arguments.
"""
import json
import re
import shlex
from typing import List, Tuple

from ..MODELS.dockerfile_ast import DockerfileAST, Instruction

# Instructions whose shell form is a single command string
_COMMAND_FORMS = {"RUN", "CMD", "ENTRYPOINT", "SHELL", "HEALTHCHECK"}
_FLAG_RE = re.compile(r'^--([a-z-]+)(?:=(\S*))?\s*')


class DockerfileParser:
    """
    Parser for Dockerfile instructions.
    """
    def parse(self, dockerfile_path: str) -> DockerfileAST:
        """
        Parses a Dockerfile from a file path.

        Args:
            dockerfile_path (str): Path to the Dockerfile.

        Returns:
            DockerfileAST: The parsed instructions.
        """
        with open(dockerfile_path, 'r') as f:
            content = f.read()
        return self.parse_from_string(content)

    def parse_from_string(self, content: str) -> DockerfileAST:
        """
        Parses a Dockerfile from a string content.

        Args:
            content (str): Content of the Dockerfile.

        Returns:
            DockerfileAST: The parsed instructions.
        """
        instructions: List[Instruction] = []

        # 1. Join line continuations, remembering where each logical line starts.
        # Comment lines inside a continuation are dropped, as Docker does.
        logical = []
        buffer = ""
        start = 0
        for number, line in enumerate(content.splitlines(), start=1):
            if re.match(r'^\s*#', line):
                continue
            if not buffer:
                start = number
            stripped = line.rstrip()
            if stripped.endswith('\\'):
                buffer += stripped[:-1] + ' '
                continue
            buffer += line
            logical.append((start, buffer))
            buffer = ""
        if buffer.strip():
            logical.append((start, buffer))

        # 2. Match instructions
        pattern = re.compile(r'^\s*([A-Za-z]+)(?:\s+(.*))?$', re.DOTALL)

        for number, text in logical:
            match = pattern.match(text)
            if not match:
                continue
            inst = match.group(1).upper()
            args_str = (match.group(2) or '').strip()

            # 3. Leading --flag[=value] options (COPY --chown, COPY --from, ...)
            flags = {}
            flag_match = _FLAG_RE.match(args_str)
            while flag_match:
                flags[flag_match.group(1)] = flag_match.group(2) or ''
                args_str = args_str[flag_match.end():]
                flag_match = _FLAG_RE.match(args_str)

            arguments, exec_form = self._arguments(inst, args_str)
            instructions.append(Instruction(
                instruction=inst,
                arguments=arguments,
                exec_form=exec_form,
                flags=flags,
                raw=text.strip(),
                line=number,
            ))

        return DockerfileAST(instructions=instructions)

    def _arguments(self, inst: str, args_str: str) -> Tuple[List[str], bool]:
        """
        Splits instruction arguments according to the exec (JSON) or shell form.
        Returns the arguments and whether the exec form was used.
        """
        # Exec form
        if args_str.startswith('[') and args_str.endswith(']'):
            try:
                args = json.loads(args_str)
                if isinstance(args, list):
                    return [str(a) for a in args], True
            except json.JSONDecodeError:
                # Not valid JSON, treat as shell form
                pass

        if inst in _COMMAND_FORMS:
            return ([args_str] if args_str else []), False

        if inst in ("ENV", "LABEL", "ARG"):
            # KEY=VALUE pairs (values may be quoted) or legacy "KEY VALUE"
            parts = args_str.split(None, 1)
            if parts and '=' in parts[0]:
                return self._split(args_str), False
            if inst == "ARG" or len(parts) < 2:
                return parts, False
            return [f"{parts[0]}={parts[1]}"], False

        return self._split(args_str), False

    @staticmethod
    def _split(args_str: str) -> List[str]:
        try:
            return shlex.split(args_str)
        except ValueError:
            # unbalanced quotes
            return args_str.split()
