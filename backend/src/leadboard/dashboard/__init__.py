"""leadboard.dashboard

Núcleo de agregación y cache del Dashboard.

Este paquete concentra la lógica de datos detrás de ``/dashboard/*`` para que
los routers permanezcan delgados (HTTP/serialización):

- :mod:`~leadboard.dashboard.store`: lectura paginada del ``transparency_log``.
- :mod:`~leadboard.dashboard.participants`: snapshot de participantes activos.
- :mod:`~leadboard.dashboard.merge`: submissions + consensos -> registros unificados.
- :mod:`~leadboard.dashboard.rejections`: motivo de rechazo -> categoría.
- :mod:`~leadboard.dashboard.aggregations`: KPIs y rollups con pandas.
- :mod:`~leadboard.dashboard.cache`: fresh/stale/expired + single-flight.
- :mod:`~leadboard.dashboard.service`: orquestación y pre-warm.
"""
