# namespace.py
# Pure naming rules mapping (source_id, tool_name) <-> flat dispatch name.
#
#   namespaced("github", "search_repos")  -> "github__search_repos"
#   parse("github__search_repos")         -> ("github", "search_repos")
#   parse("echo")                          -> (None, "echo")   local tool
#
# Any separator already present inside an identifier is collapsed to a single
# underscore before joining. Separator characters at either end of an
# identifier are swapped for a character the separator does not use, so "a_"
# becomes "a-" and can never merge into the join. A dispatch name therefore
# always splits at its first separator, and one source's prefix never matches
# another source's tools.

DEFAULT_SEPARATOR = "__"
_REPLACEMENT = "_"
_EDGE_CANDIDATES = "_-."


class ToolNamespace:
    def __init__(self, separator: str = DEFAULT_SEPARATOR, enabled: bool = True) -> None:
        if not separator:
            raise ValueError("Namespace separator must not be empty.")
        edge = next((c for c in _EDGE_CANDIDATES if c not in separator), None)
        if edge is None:
            raise ValueError(f"Namespace separator {separator!r} leaves no replacement character.")
        self.separator = separator
        self.enabled = enabled
        self._edge = edge
        self._replacement = _REPLACEMENT if separator not in _REPLACEMENT else edge

    def normalize(self, identifier: str) -> str:
        """Make a source or tool identifier safe to join with the separator."""
        value = identifier or ""
        while self.separator in value:
            value = value.replace(self.separator, self._replacement)

        lead = len(value) - len(value.lstrip(self.separator))
        if lead == len(value):
            return self._edge * lead
        trail = len(value) - len(value.rstrip(self.separator))
        return self._edge * lead + value[lead:len(value) - trail] + self._edge * trail

    def namespaced(self, source_id: str, tool_name: str) -> str:
        if not self.enabled:
            return tool_name
        return f"{self.normalize(source_id)}{self.separator}{self.normalize(tool_name)}"

    def parse(self, dispatch_name: str) -> tuple[str | None, str]:
        """Split a dispatch name. A name without separator is a local tool (source None)."""
        if not self.enabled or self.separator not in dispatch_name:
            return None, dispatch_name
        source_id, _, tool_name = dispatch_name.partition(self.separator)
        return source_id, tool_name

    def source_prefix(self, source_id: str) -> str:
        return f"{self.normalize(source_id)}{self.separator}"

    def belongs_to_source(self, dispatch_name: str, source_id: str) -> bool:
        return self.enabled and dispatch_name.startswith(self.source_prefix(source_id))

    def is_local(self, dispatch_name: str) -> bool:
        return not self.enabled or self.separator not in dispatch_name
