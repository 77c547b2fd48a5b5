"""
Módulo de Costos

Registro mínimo de costos usado como fuente de facturas electrónicas.

Tablas principales:
- costs: Costos registrados
- cost_lines: Detalle de cada costo
"""
