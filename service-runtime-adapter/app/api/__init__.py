"""API subpackage for the runtime adapter.

Routes expose the mesh's RuntimeStatus/LoadModel/UnloadModel contract plus
a reconciliation trigger. They are thin layers over ``RuntimeAdapterService``
to keep orchestration out of transport code.
"""
