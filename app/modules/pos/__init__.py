"""
Módulo POS (Point of Sale)

Ventas sincronizadas desde el proveedor de terminales POS. Son la fuente
más común de boletas electrónicas.

- Resolución del identificador externo de cada venta (identity.py)
- Sincronización de reportes por sucursal
- Listado de ventas con indicador de documento tributario

Tablas principales:
- pos_transactions: Ventas POS
- pos_transaction_items: Productos de cada venta
"""
