"""Operazioni GraphQL Saleor usate dall'importer."""

CHANNELS_QUERY = """
query Channels {
  channels {
    id
    name
    slug
    currencyCode
  }
}
"""

PRODUCT_TYPES_QUERY = """
query ProductTypes($filter: ProductTypeFilterInput) {
  productTypes(first: 10, filter: $filter) {
    edges {
      node {
        id
        name
        slug
        productAttributes { id name slug inputType }
        variantAttributes { id name slug inputType }
      }
    }
  }
}
"""

CATEGORIES_QUERY = """
query Categories($filter: CategoryFilterInput) {
  categories(first: 10, filter: $filter) {
    edges {
      node { id name slug }
    }
  }
}
"""

WAREHOUSES_QUERY = """
query Warehouses {
  warehouses(first: 100) {
    edges {
      node { id name slug }
    }
  }
}
"""

PRODUCT_BULK_CREATE_MUTATION = """
mutation ProductBulkCreate($products: [ProductBulkCreateInput!]!) {
  productBulkCreate(products: $products, errorPolicy: REJECT_FAILED_ROWS) {
    count
    results {
      product {
        id
        name
        slug
        variants { id sku name }
      }
      errors { message code path }
    }
    errors { message code path }
  }
}
"""
