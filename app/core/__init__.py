# Security pipeline building blocks
