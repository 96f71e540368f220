"""
Pagination hints from a staged document.

Pure scan, independent of inference. GraphQL connections carry their own
continuation metadata; this pulls it out so a caller staging page one knows
there is a page two.

    pageInfo     first object found depth-first (first match wins)
    totalCount   first numeric value found depth-first
    currentCount sum of every `edges` array length, else of every array
"""

from dataclasses import dataclass
from typing import Any, Optional


@dataclass
class PaginationInfo:
    has_next_page: bool = False
    has_previous_page: bool = False
    end_cursor: Optional[str] = None
    start_cursor: Optional[str] = None
    total_count: Optional[int | float] = None
    current_count: int = 0
    suggestion: Optional[str] = None
    detected: bool = False

    def to_dict(self) -> dict:
        """Response shape, GraphQL-style keys."""
        out = {
            'hasNextPage': self.has_next_page,
            'hasPreviousPage': self.has_previous_page,
            'endCursor': self.end_cursor,
            'startCursor': self.start_cursor,
            'totalCount': self.total_count,
            'currentCount': self.current_count,
        }
        if self.suggestion:
            out['suggestion'] = self.suggestion
        return out


def _children(node: Any):
    if isinstance(node, dict):
        return node.values()
    if isinstance(node, list):
        return node
    return ()


def find_page_info(node: Any) -> Optional[dict]:
    if isinstance(node, dict) and isinstance(node.get('pageInfo'), dict):
        return node['pageInfo']
    for child in _children(node):
        found = find_page_info(child)
        if found is not None:
            return found
    return None


def find_total_count(node: Any) -> Optional[int | float]:
    if isinstance(node, dict):
        value = node.get('totalCount')
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return value
    for child in _children(node):
        found = find_total_count(child)
        if found is not None:
            return found
    return None


def _edges_lengths(node: Any) -> list[int]:
    lengths = []
    if isinstance(node, dict) and isinstance(node.get('edges'), list):
        lengths.append(len(node['edges']))
    for child in _children(node):
        lengths.extend(_edges_lengths(child))
    return lengths


def _array_items(node: Any) -> int:
    """Every array's length, nested ones included."""
    total = len(node) if isinstance(node, list) else 0
    for child in _children(node):
        total += _array_items(child)
    return total


def count_current_items(node: Any) -> int:
    edges = _edges_lengths(node)
    if edges:
        return sum(edges)
    return _array_items(node)


def extract_pagination(document: Any) -> PaginationInfo:
    """Continuation metadata for one document. Never raises on odd shapes."""
    info = PaginationInfo()

    page_info = find_page_info(document)
    if page_info is not None:
        info.has_next_page = bool(page_info.get('hasNextPage') or False)
        info.has_previous_page = bool(page_info.get('hasPreviousPage') or False)
        info.end_cursor = page_info.get('endCursor')
        info.start_cursor = page_info.get('startCursor')

    info.total_count = find_total_count(document)
    info.current_count = count_current_items(document)
    info.detected = page_info is not None or info.total_count is not None

    if info.has_next_page:
        info.suggestion = (
            f'Use pagination to get more than {info.current_count} records. '
            f'Add "pageInfo {{ hasNextPage endCursor }}" to your query and use '
            f'"after: \\"{info.end_cursor}\\"" for the next page.')
    return info
