# ERP API security core
