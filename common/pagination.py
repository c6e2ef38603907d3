from rest_framework.pagination import PageNumberPagination


class StandardResultsSetPagination(PageNumberPagination):
    """Page-number pagination for assignment history and directory lists.

    `?page_size=` is honoured up to `max_page_size`; ledger trees are not
    paginated because a forest cannot be split without orphaning children.
    """

    page_size_query_param = "page_size"
    max_page_size = 500
